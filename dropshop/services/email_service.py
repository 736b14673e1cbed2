"""
Email service for order confirmations, status updates and admin alerts.
Uses Flask-Mail for SMTP integration with UTF-8 support.

Every sender is best-effort: it returns True/False and never raises, so
a mail outage cannot roll back an order or a reservation.
"""
import logging
from decimal import Decimal
from html import escape
from typing import List, Dict, Any, Optional
from flask import current_app
from flask_mail import Mail, Message

logger = logging.getLogger(__name__)

mail = Mail()

STATUS_MESSAGES = {
    'confirmed': 'Your order has been confirmed and is being prepared!',
    'prepared': 'Your order is ready for pickup!',
    'completed': 'Thank you for your order!',
    'cancelled': 'Your order has been cancelled.',
}


def init_mail(app):
    """Initialize Flask-Mail with app."""
    mail.init_app(app)


def _mail_enabled() -> bool:
    """
    Check if mail is properly configured and enabled.
    Prevents 500 errors in dev or misconfigured environments.
    """
    cfg = current_app.config
    return bool(
        not cfg.get("MAIL_SUPPRESS_SEND", False)
        and cfg.get("MAIL_SERVER")
        and cfg.get("MAIL_USERNAME")
    )


def _money(value) -> str:
    return f"{Decimal(str(value or 0)):.2f}"


def _shop() -> Dict[str, str]:
    cfg = current_app.config
    return {
        'name': cfg.get('SHOP_NAME', ''),
        'phone': cfg.get('SHOP_PHONE', ''),
        'email': cfg.get('SHOP_EMAIL', ''),
    }


def send_order_confirmation_email(
    to_email: str,
    customer_name: str,
    public_code: str,
    items: List[Dict[str, Any]],
    total_amount,
    pickup_date: str,
    pickup_time: str,
    location_name: Optional[str] = None,
    special_instructions: Optional[str] = None,
) -> bool:
    """
    Send the order confirmation to the customer.

    Args:
        to_email: Recipient email
        customer_name: Customer name
        public_code: Human order code, e.g. #IH01-001
        items: dicts with name, quantity and unit_price
        total_amount: Order total
        pickup_date: Pickup date (ISO string)
        pickup_time: Pickup time slot
        location_name: Pickup location

    Returns:
        True if sent successfully (or mail disabled), False otherwise
    """
    try:
        logger.info(f"[EMAIL] Preparing confirmation {public_code} for {to_email}")

        if not _mail_enabled():
            logger.warning(f"[MAIL DISABLED] Order confirmation skipped for {to_email}")
            return True

        shop = _shop()
        rows = "".join(
            f"""
            <tr>
                <td>{escape(str(item.get('name') or ''))}</td>
                <td align="center">{item.get('quantity')}</td>
                <td align="right">{_money(item.get('unit_price'))}</td>
            </tr>
            """
            for item in items
        )
        instructions_html = (
            f"<p><strong>Special instructions:</strong> {escape(special_instructions)}</p>"
            if special_instructions else ""
        )

        html_body = f"""
        <!DOCTYPE html>
        <html>
        <head><meta charset="UTF-8"></head>
        <body style="font-family: Arial, sans-serif; color: #333;">
            <div style="max-width: 600px; margin: auto; padding: 20px;">
                <h2>Thanks for your order, {escape(customer_name)}!</h2>
                <p>Your order code is <strong>{public_code}</strong>.</p>
                <p>Pickup: <strong>{pickup_date} {pickup_time}</strong>
                   {f'at {escape(location_name)}' if location_name else ''}</p>
                <table width="100%" border="1" cellpadding="6" cellspacing="0">
                    <tr><th>Item</th><th>Qty</th><th>Price</th></tr>
                    {rows}
                </table>
                <p style="text-align:right;"><strong>Total: {_money(total_amount)}</strong></p>
                {instructions_html}
                <p style="font-size: 13px; color: #666;">
                    {escape(shop['name'])} · {escape(shop['phone'])} · {escape(shop['email'])}
                </p>
            </div>
        </body>
        </html>
        """

        lines = "\n".join(
            f"- {item.get('quantity')} x {item.get('name')} ({_money(item.get('unit_price'))})"
            for item in items
        )
        text_body = f"""
Hi {customer_name},

Thanks for your order {public_code}.
Pickup: {pickup_date} {pickup_time}{f' at {location_name}' if location_name else ''}

{lines}

Total: {_money(total_amount)}

{shop['name']} {shop['phone']}
"""

        msg = Message(
            subject=f"Order Confirmation - {public_code}",
            recipients=[to_email],
            body=text_body,
            html=html_body,
        )
        mail.send(msg)
        logger.info(f"[EMAIL] ✓ Order confirmation sent to {to_email}")
        return True

    except Exception as e:
        logger.exception(f"[EMAIL] ✗ Error sending order confirmation: {e}")
        return False


def send_order_status_update_email(to_email: str, customer_name: str, public_code: str, status: str) -> bool:
    try:
        if not _mail_enabled():
            logger.info(f"[MAIL DISABLED] Status update skipped for {to_email}")
            return True

        message = STATUS_MESSAGES.get(status, 'Your order status has been updated.')
        msg = Message(
            subject=f"Order Status Update - {public_code}",
            recipients=[to_email],
            body=f"Hi {customer_name},\n\nOrder {public_code}: {message}\n",
            html=(
                f"<h2>Order Status Update</h2><p>Hi {escape(customer_name or '')},</p>"
                f"<p><strong>Order {public_code}</strong></p><p>{message}</p>"
            ),
        )
        mail.send(msg)
        return True

    except Exception:
        logger.exception("[EMAIL] Error sending status update email")
        return False


def send_payment_failed_notification(
    payment_intent_id: str,
    failure_message: str,
    customer: Dict[str, Any],
    cart_items: List[Dict[str, Any]],
    public_code: Optional[str] = None,
) -> bool:
    """Tell the admin a payment failed, with what is needed to follow up by hand."""
    to_email = current_app.config.get('ADMIN_NOTIFICATION_EMAIL')
    if not to_email:
        logger.warning(f"[EMAIL] ADMIN_NOTIFICATION_EMAIL not set, payment failure {payment_intent_id} not mailed")
        return False

    cart = "\n".join(
        f"- {item.get('quantity')} x {item.get('name') or item.get('id')}"
        for item in cart_items
    ) or "(no cart data)"
    body = f"""Payment failed for {payment_intent_id}
Order: {public_code or 'not created'}
Reason: {failure_message}

Customer:
  Name: {customer.get('name') or '-'}
  Email: {customer.get('email') or '-'}
  Phone: {customer.get('phone') or '-'}

Cart:
{cart}
"""
    return send_alert_email(to_email, f"Payment failed - {public_code or payment_intent_id}", body)


def send_alert_email(to_email: str, subject: str, message: str) -> bool:
    try:
        if not _mail_enabled():
            logger.info(f"[MAIL DISABLED] Alert email skipped for {to_email}")
            return True

        msg = Message(subject=subject, recipients=[to_email], body=message)
        mail.send(msg)
        return True

    except Exception:
        logger.exception("[EMAIL] Error sending alert email")
        return False
