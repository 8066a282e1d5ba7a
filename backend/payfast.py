import hashlib
import hmac
from typing import Dict, Mapping, Optional
from urllib.parse import quote, urlencode

PAYFAST_SANDBOX_URL = "https://sandbox.payfast.co.za/eng/process"

# Characters encodeURIComponent leaves untouched.
_UNRESERVED = "-_.!~*'()"

PAYMENT_STATUS_TO_ORDER_STATUS = {
    "COMPLETE": "Processing",
    "FAILED": "Cancelled",
}


def encode_value(value) -> str:
    return quote("" if value is None else str(value), safe=_UNRESERVED)


def build_signature_string(data: Mapping[str, object], passphrase: Optional[str] = None) -> str:
    pairs = [
        f"{key}={encode_value(data[key])}"
        for key in sorted(data)
        if key != "signature" and data[key] is not None
    ]
    signature_string = "&".join(pairs)
    if passphrase:
        signature_string += f"&passphrase={encode_value(passphrase)}"
    return signature_string


def generate_signature(data: Mapping[str, object], passphrase: Optional[str] = None) -> str:
    signature_string = build_signature_string(data, passphrase)
    return hashlib.md5(signature_string.encode("utf-8")).hexdigest()


def verify_signature(
    data: Mapping[str, object], received_signature: Optional[str], passphrase: Optional[str] = None
) -> bool:
    if not received_signature:
        return False
    expected = generate_signature(data, passphrase)
    return hmac.compare_digest(expected, str(received_signature).strip().lower())


def build_payment_request(order_id, amount: float, settings: Mapping[str, str]) -> Dict[str, str]:
    params: Dict[str, str] = {
        "merchant_id": settings.get("merchant_id") or "",
        "merchant_key": settings.get("merchant_key") or "",
        "return_url": settings.get("return_url") or "",
        "cancel_url": settings.get("cancel_url") or "",
        "notify_url": settings.get("notify_url") or "",
        "m_payment_id": str(order_id),
        "amount": f"{float(amount):.2f}",
        "item_name": f"Order #{order_id}",
    }
    params["signature"] = generate_signature(params, settings.get("passphrase"))

    base_url = settings.get("url") or PAYFAST_SANDBOX_URL
    return {
        "redirect_url": f"{base_url}?{urlencode(params)}",
        "status": "pending",
    }


def order_status_for_payment(payment_status: Optional[str]) -> Optional[str]:
    return PAYMENT_STATUS_TO_ORDER_STATUS.get(str(payment_status or "").strip().upper())
