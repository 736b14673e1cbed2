"""
Admin notification channel.

An alert is a row in admin_alert plus an email to ADMIN_NOTIFICATION_EMAIL.
The row is added to the caller's session; the email goes out right away
and is best-effort.
"""
import logging
from typing import Optional, Dict, Any
from flask import current_app, has_app_context

from dropshop.models import AdminAlert, AlertSeverity, AlertKind
from dropshop.services.email_service import send_alert_email
from dropshop.services.metrics_service import admin_alerts_total

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.CRITICAL: logging.CRITICAL,
}


def raise_admin_alert(
    session,
    kind: AlertKind,
    message: str,
    severity: AlertSeverity = AlertSeverity.CRITICAL,
    payment_intent_id: Optional[str] = None,
    order_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
    notify: bool = True,
) -> AdminAlert:
    """
    Record and email an admin alert.

    The session is flushed, not committed: the caller decides whether the
    alert is committed together with its own work or on its own. With
    notify=False the caller sends its own, richer email.
    """
    severity = AlertSeverity(severity)
    kind = AlertKind(kind)
    logger.log(
        _LOG_LEVELS[severity],
        f"[ALERT] {severity.value} {kind.value}: {message} "
        f"(payment_intent={payment_intent_id}, order={order_id})",
    )

    alert = AdminAlert(
        severity=severity.value,
        kind=kind.value,
        message=message,
        payment_intent_id=payment_intent_id,
        order_id=order_id,
        details_json=details,
    )
    session.add(alert)
    session.flush()
    admin_alerts_total.labels(severity=severity.value).inc()

    if not notify:
        return alert

    to_email = current_app.config.get('ADMIN_NOTIFICATION_EMAIL') if has_app_context() else None
    if to_email:
        body = message
        if details:
            body += "\n\n" + "\n".join(f"{key}: {value}" for key, value in details.items())
        send_alert_email(to_email, f"[{severity.value}] {kind.value.replace('_', ' ').title()}", body)
    else:
        logger.warning(f"[ALERT] No ADMIN_NOTIFICATION_EMAIL configured, alert {alert.id} stored only")

    return alert
