import hashlib
from datetime import datetime, timedelta, timezone

import jwt
import pytest

import auth
import mailer
import settings
import sms
import store
from conftest import make_user


@pytest.fixture
def fixed_otp(monkeypatch):
    codes = []

    def next_code():
        code = f"{len(codes) + 1:06d}"
        codes.append(code)
        return code

    monkeypatch.setattr(auth, "generate_otp", next_code)
    return codes


def test_normalize_mobile():
    assert auth.normalize_mobile("+91 98765-43210") == "+919876543210"
    assert auth.normalize_mobile("0091 (98765) 43210") == "+919876543210"
    assert auth.normalize_mobile("12345") is None
    assert auth.normalize_mobile("+0123456789") is None


def test_parse_contact():
    assert auth.parse_contact(" Grower@Example.com ") == ("email", "grower@example.com")
    assert auth.parse_contact("+91 98765 43210") == ("mobile", "+919876543210")
    with pytest.raises(auth.AuthError, match="Invalid email or mobile number"):
        auth.parse_contact("not-a-contact")


def test_mask_contact():
    assert auth.mask_contact("john.doe@example.com") == "j******e@example.com"
    assert auth.mask_contact("ab@x.io") == "a*@x.io"
    assert auth.mask_contact("+919876543210") == "+919876****10"


def test_send_otp_stores_hash_only(fixed_otp):
    masked = auth.send_otp("grower@example.com")
    assert masked == "g****r@example.com"
    row = store.fetch_one("SELECT * FROM otp_logs WHERE contact = ?", ("grower@example.com",))
    assert row["otp_hash"] != fixed_otp[0]
    expected = hashlib.sha256((fixed_otp[0] + settings.OTP_SALT).encode("utf-8")).hexdigest()
    assert row["otp_hash"] == expected
    assert row["attempts"] == 0


def test_send_otp_rate_limited_per_hour(fixed_otp):
    for _ in range(3):
        auth.send_otp("+919876543210")
    with pytest.raises(auth.OtpRateLimited) as excinfo:
        auth.send_otp("+91 98765 43210")
    assert excinfo.value.status == 429


def test_new_otp_invalidates_previous(fixed_otp):
    auth.send_otp("grower@example.com")
    auth.send_otp("grower@example.com")
    with pytest.raises(auth.AuthError, match="Invalid or expired OTP"):
        auth.verify_otp("grower@example.com", fixed_otp[0])
    auth.verify_otp("grower@example.com", fixed_otp[1])


def test_otp_is_single_use(fixed_otp):
    auth.send_otp("grower@example.com")
    auth.verify_otp("grower@example.com", fixed_otp[0])
    with pytest.raises(auth.AuthError):
        auth.verify_otp("grower@example.com", fixed_otp[0])


def test_otp_locked_after_max_attempts(fixed_otp):
    auth.send_otp("grower@example.com")
    for _ in range(5):
        with pytest.raises(auth.AuthError, match="Invalid or expired OTP"):
            auth.verify_otp("grower@example.com", "999999")
    with pytest.raises(auth.AuthError, match="Too many failed attempts"):
        auth.verify_otp("grower@example.com", fixed_otp[0])


def test_expired_otp_rejected(fixed_otp):
    auth.send_otp("grower@example.com")
    store.execute("UPDATE otp_logs SET expires_at = 0")
    with pytest.raises(auth.AuthError, match="Invalid or expired OTP"):
        auth.verify_otp("grower@example.com", fixed_otp[0])


def test_email_otp_delivered_through_mailer(monkeypatch, fixed_otp):
    sent = []
    monkeypatch.setattr(settings, "BYPASS_OTP", False)
    monkeypatch.setattr(mailer, "send_otp_email", lambda to, code: sent.append((to, code)))
    auth.send_otp("grower@example.com")
    assert sent == [("grower@example.com", fixed_otp[0])]


def test_email_failure_does_not_store_otp(monkeypatch, fixed_otp):
    def boom(to, code):
        raise OSError("connection refused")

    monkeypatch.setattr(settings, "BYPASS_OTP", False)
    monkeypatch.setattr(mailer, "send_otp_email", boom)
    with pytest.raises(auth.AuthError) as excinfo:
        auth.send_otp("grower@example.com")
    assert excinfo.value.status == 500
    assert store.fetch_one("SELECT COUNT(*) AS n FROM otp_logs")["n"] == 0


def test_sms_unconfigured_prints_code_outside_production(monkeypatch, capsys, fixed_otp):
    monkeypatch.setattr(settings, "BYPASS_OTP", False)
    auth.send_otp("+919876543210")
    assert fixed_otp[0] in capsys.readouterr().out


def test_sms_unconfigured_fails_in_production(monkeypatch, fixed_otp):
    monkeypatch.setattr(settings, "BYPASS_OTP", False)
    monkeypatch.setattr(settings, "IS_PRODUCTION", True)
    with pytest.raises(auth.AuthError) as excinfo:
        auth.send_otp("+919876543210")
    assert excinfo.value.status == 500


def test_sms_delivered_through_twilio(monkeypatch, fixed_otp):
    sent = []
    monkeypatch.setattr(settings, "BYPASS_OTP", False)
    monkeypatch.setattr(sms, "is_configured", lambda: True)
    monkeypatch.setattr(sms, "send_sms", lambda to, body: sent.append((to, body)) or (True, None))
    auth.send_otp("+919876543210")
    assert sent[0][0] == "+919876543210"
    assert fixed_otp[0] in sent[0][1]


def test_register_and_password_login():
    session = auth.register({"name": "Asha", "email": "Asha@Example.com", "password": "greenhouse"})
    assert session["first_time"] is True
    assert session["user"]["role"] == "FARM_MANAGER"
    assert session["user"]["email"] == "asha@example.com"

    logged_in = auth.login_with_password("asha@example.com", "greenhouse")
    assert logged_in["user"]["id"] == session["user"]["id"]
    with pytest.raises(auth.AuthError, match="Invalid credentials") as excinfo:
        auth.login_with_password("asha@example.com", "wrong-password")
    assert excinfo.value.status == 401


def test_register_rejects_duplicates_and_short_passwords():
    auth.register({"name": "Asha", "email": "asha@example.com", "mobile": "+919876543210"})
    with pytest.raises(auth.AuthError) as excinfo:
        auth.register({"name": "Other", "email": "other@example.com", "mobile": "+91 98765 43210"})
    assert excinfo.value.status == 409
    with pytest.raises(auth.AuthError, match="at least 8"):
        auth.register({"name": "Short", "email": "short@example.com", "password": "abc"})


def test_login_with_otp_requires_registration(fixed_otp):
    auth.send_otp("+919876543210")
    with pytest.raises(auth.AuthError) as excinfo:
        auth.login_with_otp("+919876543210", fixed_otp[0])
    assert excinfo.value.status == 404


def test_login_with_otp_marks_contact_verified(fixed_otp):
    user = make_user("VIEWER", "viewer@example.com", mobile="+919876543210")
    auth.send_otp("+919876543210")
    session = auth.login_with_otp("+91 98765 43210", fixed_otp[0])
    assert session["user"]["id"] == user["id"]
    assert session["user"]["mobile_verified"] is True
    assert session["first_time"] is False


def test_verify_email_otp_creates_user(fixed_otp):
    auth.request_email_otp("new.grower@example.com")
    session = auth.verify_email_otp("new.grower@example.com", fixed_otp[0])
    assert session["first_time"] is True
    assert session["user"]["name"] == "new.grower"
    assert session["user"]["email_verified"] is True


def test_request_email_otp_is_silent_for_bad_input(fixed_otp):
    auth.request_email_otp("not-an-email")
    for _ in range(4):
        auth.request_email_otp("grower@example.com")
    assert store.fetch_one("SELECT COUNT(*) AS n FROM otp_logs")["n"] == 3


def test_authenticate_token():
    user = make_user("ADMIN")
    token = auth.issue_token(user["id"])
    assert jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])["user_id"] == user["id"]
    assert auth.authenticate(f"Bearer {token}")["id"] == user["id"]

    with pytest.raises(auth.AuthError, match="Access token required"):
        auth.authenticate(None)
    with pytest.raises(auth.AuthError, match="Invalid or expired token"):
        auth.authenticate("Bearer garbage")
    expired = jwt.encode(
        {"user_id": user["id"], "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
        settings.JWT_SECRET,
        algorithm="HS256",
    )
    with pytest.raises(auth.AuthError, match="Invalid or expired token"):
        auth.authenticate(f"Bearer {expired}")


def test_deactivated_user_cannot_authenticate():
    user = make_user("VIEWER")
    token = auth.issue_token(user["id"])
    store.execute("UPDATE users SET is_active = 0 WHERE id = ?", (user["id"],))
    with pytest.raises(auth.AuthError) as excinfo:
        auth.authenticate(f"Bearer {token}")
    assert excinfo.value.status == 401
