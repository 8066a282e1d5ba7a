from datetime import datetime
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlencode

import requests
import resend
from flask import current_app, render_template

from pricing import resolve_unit_price, safe_float, safe_positive_int

WHATSAPP_API_URL = "https://graph.facebook.com/v19.0/{phone_number_id}/messages"

STATUS_DETAILS = {
    "Processing": {
        "title": "Order Processing",
        "message": "We've received your order and are preparing it for shipment.",
        "color": "#3498db",
    },
    "Shipped": {
        "title": "Order Shipped!",
        "message": "Your order is on its way to you!",
        "color": "#2ecc71",
    },
    "Delivered": {
        "title": "Order Delivered",
        "message": "Your order has been successfully delivered.",
        "color": "#27ae60",
    },
    "Cancelled": {
        "title": "Order Cancelled",
        "message": "Your order has been cancelled as requested.",
        "color": "#e74c3c",
    },
    "Returned": {
        "title": "Return Processed",
        "message": "We've received your returned items.",
        "color": "#f39c12",
    },
}

STATUS_EMAIL_SUBJECTS = {
    "Shipped": "Your Order Has Shipped!",
    "Delivered": "Order Delivered - Leave a Review",
    "Cancelled": "Order Cancellation Notice",
    "Returned": "Order Return Processed",
}


def send_email_via_resend(payload: Dict[str, object], api_key: str) -> Tuple[bool, Optional[str]]:
    configured_api_key = (api_key or "").strip()
    if not configured_api_key:
        return False, "Resend API key is not configured."

    previous_api_key = getattr(resend, "api_key", None)
    resend.api_key = configured_api_key
    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        return False, str(exc)
    finally:
        resend.api_key = previous_api_key

    if not isinstance(response, dict) or not response.get("id"):
        return False, str(response)

    return True, None


def send_email(recipient: str, subject: str, html_body: str, text_body: str):
    config = current_app.config
    payload: Dict[str, object] = {
        "from": config.get("EMAIL_FROM"),
        "to": [recipient],
        "subject": subject,
        "html": html_body,
        "text": text_body,
    }
    return send_email_via_resend(payload, config.get("RESEND_API_KEY"))


def send_whatsapp_template(
    phone: str,
    template_name: str,
    parameters: List[object],
    button_parameter: Optional[str] = None,
) -> Tuple[bool, Optional[str]]:
    config = current_app.config
    access_token = (config.get("WHATSAPP_ACCESS_TOKEN") or "").strip()
    phone_number_id = (config.get("WHATSAPP_PHONE_NUMBER_ID") or "").strip()
    if not access_token or not phone_number_id:
        return False, "WhatsApp Cloud API is not configured."
    if not phone:
        return False, "Missing recipient phone number."

    components: List[Dict[str, object]] = [
        {
            "type": "body",
            "parameters": [{"type": "text", "text": str(value)} for value in parameters],
        }
    ]
    if button_parameter:
        components.append(
            {
                "type": "button",
                "sub_type": "url",
                "index": 0,
                "parameters": [{"type": "text", "text": str(button_parameter)}],
            }
        )

    body = {
        "messaging_product": "whatsapp",
        "to": phone,
        "type": "template",
        "template": {
            "name": template_name,
            "language": {"code": "en_US"},
            "components": components,
        },
    }

    try:
        response = requests.post(
            WHATSAPP_API_URL.format(phone_number_id=phone_number_id),
            json=body,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {access_token}",
            },
            timeout=10,
        )
    except requests.RequestException as exc:
        return False, str(exc)

    if not response.ok:
        return False, response.text

    return True, None


def build_tracking_link(base_url: Optional[str], tracking_id: Optional[str]) -> str:
    tracking_id = str(tracking_id or "").strip()
    if not tracking_id:
        return "N/A"
    base_url = str(base_url or "").strip().rstrip("/")
    if not base_url:
        return tracking_id
    return f"{base_url}/{tracking_id}"


def order_contact(order: Dict, user: Optional[Dict]) -> Dict[str, Optional[str]]:
    if user:
        return {
            "email": user.get("email") or "",
            "phone": user.get("phone") or "",
            "verification_method": user.get("verification_method") or "email",
        }
    shipping_address = order.get("shipping_address") or {}
    return {
        "email": shipping_address.get("email") or "",
        "phone": shipping_address.get("phone") or "",
        "verification_method": None,
    }


def describe_price_option(price_option: Optional[Dict]) -> str:
    price_option = price_option or {}
    if price_option.get("type") == "weight-based":
        return f"{safe_positive_int(price_option.get('weight'), 0)}g"
    return "Packet"


def build_email_items(order: Dict) -> List[Dict[str, object]]:
    email_items = []
    for item in order.get("items") or []:
        quantity = safe_positive_int(item.get("quantity"), 1) or 1
        unit_price = resolve_unit_price(item.get("price_option"))
        email_items.append(
            {
                "name": item.get("name") or "Item",
                "image": item.get("image") or "",
                "variant": describe_price_option(item.get("price_option")),
                "quantity": quantity,
                "unit_price": unit_price,
                "line_total": round(unit_price * quantity, 2),
            }
        )
    return email_items


def _log_failure(channel: str, order_id, error: Optional[str]):
    current_app.logger.warning(
        "%s notification for order %s failed: %s",
        channel,
        order_id,
        error or "Unknown delivery error",
    )


def send_order_confirmation(order: Dict, user: Optional[Dict] = None) -> Dict[str, bool]:
    config = current_app.config
    contact = order_contact(order, user)
    order_id = str(order.get("_id"))
    currency = config.get("CURRENCY_LABEL", "Rs")
    tracking_link = build_tracking_link(config.get("TRACKING_BASE_URL"), order.get("tracking_id"))
    results = {"email": False, "whatsapp": False}

    if contact["email"]:
        shipping_address = order.get("shipping_address") or {}
        html_body = render_template(
            "emails/order_confirmation.html",
            order=order,
            order_id=order_id,
            items=build_email_items(order),
            address_line=", ".join(str(value) for value in shipping_address.values() if value),
            currency=currency,
        )
        text_body = (
            f"Thank you for your order! Order #{order_id} is {order.get('status')}.\n"
            f"Total: {currency}{safe_float(order.get('total_amount')):.2f}.\n"
            f"Payment method: {order.get('payment_method')}."
        )
        sent, error = send_email(contact["email"], "Order Confirmation", html_body, text_body)
        results["email"] = sent
        if not sent:
            _log_failure("Email", order_id, error)

    if contact["verification_method"] == "phone" and contact["phone"]:
        sent, error = send_whatsapp_template(
            contact["phone"],
            "order_confirmation",
            [order_id, f"{safe_float(order.get('total_amount')):.2f}", tracking_link],
        )
        results["whatsapp"] = sent
        if not sent:
            _log_failure("WhatsApp", order_id, error)

    return results


def send_status_notification(order: Dict, status: str, user: Optional[Dict] = None) -> Dict[str, bool]:
    results = {"email": False, "whatsapp": False}
    subject = STATUS_EMAIL_SUBJECTS.get(status)
    if not subject:
        return results

    config = current_app.config
    contact = order_contact(order, user)
    order_id = str(order.get("_id"))
    tracking_base_url = config.get("TRACKING_BASE_URL") or ""
    tracking_link = build_tracking_link(tracking_base_url, order.get("tracking_id"))
    created_at = order.get("created_at")

    if contact["email"]:
        html_body = render_template(
            "emails/order_status.html",
            order=order,
            order_id=order_id,
            status=status,
            details=STATUS_DETAILS[status],
            items=build_email_items(order),
            currency=config.get("CURRENCY_LABEL", "Rs"),
            order_date=created_at.strftime("%Y-%m-%d") if isinstance(created_at, datetime) else "",
            tracking_link=tracking_link if tracking_base_url else "",
            store_name=config.get("STORE_NAME", "Peach Flask"),
            support_email=config.get("SUPPORT_EMAIL", ""),
            year=datetime.utcnow().year,
        )
        text_body = f"{STATUS_DETAILS[status]['message']} Order #{order_id} is now {status}."
        if status == "Shipped" and order.get("tracking_id"):
            text_body += f" Tracking: {tracking_link}"
        sent, error = send_email(contact["email"], subject, html_body, text_body)
        results["email"] = sent
        if not sent:
            _log_failure("Email", order_id, error)

    if contact["verification_method"] == "phone" and contact["phone"]:
        sent, error = send_whatsapp_template(
            contact["phone"], "status_update", [order_id, status, tracking_link]
        )
        results["whatsapp"] = sent
        if not sent:
            _log_failure("WhatsApp", order_id, error)

    return results


def send_verification_code(user: Dict, otp: str, expiration_minutes: int) -> Tuple[bool, Optional[str]]:
    config = current_app.config
    if user.get("verification_method") == "phone":
        return send_whatsapp_template(
            user.get("phone") or "",
            "signupotp",
            [otp, config.get("SUPPORT_CONTACT_NUMBER") or ""],
            button_parameter=otp,
        )

    html_body = render_template(
        "emails/verify_account.html",
        otp=otp,
        recipient_name=user.get("name") or "",
        expiration_minutes=expiration_minutes,
        store_name=config.get("STORE_NAME", "Peach Flask"),
    )
    text_body = (
        f"Your verification code is {otp}. "
        f"Enter it within {expiration_minutes} minutes to activate your account."
    )
    return send_email(user.get("email") or "", "Verify your account", html_body, text_body)


def send_password_reset(user: Dict, token: str, expiration_minutes: int) -> Tuple[bool, Optional[str]]:
    config = current_app.config
    if user.get("verification_method") == "phone":
        return send_whatsapp_template(
            user.get("phone") or "",
            "forgotpassword",
            [token, config.get("SUPPORT_CONTACT_NUMBER") or ""],
            button_parameter=token,
        )

    frontend_url = str(config.get("FRONTEND_URL") or "").rstrip("/")
    query = urlencode({"token": token, "email": user.get("email") or ""})
    reset_link = f"{frontend_url}/auth/reset-password?{query}" if frontend_url else ""
    html_body = render_template(
        "emails/password_reset.html",
        token=token,
        reset_link=reset_link,
        expiration_minutes=expiration_minutes,
        store_name=config.get("STORE_NAME", "Peach Flask"),
    )
    text_body = (
        f"Use this code {token} to reset your password within {expiration_minutes} minutes."
    )
    return send_email(user.get("email") or "", "Password Reset", html_body, text_body)
