import base64
import urllib.parse
import urllib.request
from typing import Optional, Tuple

import settings


def is_configured() -> bool:
    return bool(settings.TWILIO_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_FROM_NUMBER)


def send_sms(to: str, body: str) -> Tuple[bool, Optional[str]]:
    if not is_configured():
        return False, "not_configured"
    url = f"https://api.twilio.com/2010-04-01/Accounts/{settings.TWILIO_SID}/Messages.json"
    payload = {"To": to, "From": settings.TWILIO_FROM_NUMBER, "Body": body}
    data = urllib.parse.urlencode(payload).encode("utf-8")
    credentials = f"{settings.TWILIO_SID}:{settings.TWILIO_AUTH_TOKEN}".encode("utf-8")
    req = urllib.request.Request(url, data=data, method="POST")
    req.add_header("Authorization", "Basic " + base64.b64encode(credentials).decode("ascii"))
    try:
        with urllib.request.urlopen(req, timeout=10) as resp:  # noqa: S310 (expected outbound call)
            resp.read()
    except Exception as exc:
        return False, type(exc).__name__
    return True, None
