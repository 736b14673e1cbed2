"""Client service - get-or-create customers by email."""
import logging
from typing import Optional
from sqlalchemy.exc import IntegrityError
from dropshop.models import Client

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return (email or '').strip().lower()


def get_or_create_client(session, email: str, name: Optional[str] = None, phone: Optional[str] = None) -> Client:
    """
    Get or create the client identified by `email`.

    Idempotent and safe under concurrency thanks to the unique constraint on
    clients.email: when two requests insert the same email, the loser's
    savepoint is rolled back and the winner's row is returned. A known
    client gets its missing name/phone filled in, existing values are kept.

    Args:
        session: SQLAlchemy session
        email: Customer email (case-insensitive)
        name: Customer name
        phone: Customer phone

    Returns:
        Client (flushed, has an id)
    """
    email = normalize_email(email)
    client = session.query(Client).filter(Client.email == email).first()

    if client is None:
        try:
            with session.begin_nested():
                client = Client(email=email, name=name, phone=phone)
                session.add(client)
                session.flush()
            logger.info(f"[CLIENT] Created client {client.id} for {email}")
            return client
        except IntegrityError:
            # Race condition: another request created it simultaneously
            logger.info(f"[CLIENT] Concurrent insert for {email}, re-reading")
            client = session.query(Client).filter(Client.email == email).one()

    if name and not client.name:
        client.name = name
    if phone and not client.phone:
        client.phone = phone
    return client
