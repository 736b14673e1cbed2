"""Boundary validation helper."""
from typing import Any, Type, TypeVar
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from dropshop.exceptions import ValidationError

T = TypeVar('T', bound=BaseModel)


def parse_request(schema: Type[T], data: Any, message: str = 'Validation failed') -> T:
    """Validate a payload against a schema or raise a 400-class ValidationError."""
    if data is None:
        raise ValidationError('Request body must be a JSON object')
    try:
        return schema.model_validate(data)
    except PydanticValidationError as e:
        details = [
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ValidationError(message, details=details)
