import unittest
from datetime import timedelta
from types import SimpleNamespace

import jwt

from core.credential_service import (
    METHOD_FEDERATED,
    METHOD_MAGIC_LINK,
    CredentialStatus,
    issue,
    refresh,
    validate,
)
from core.db import DB
from core.identity_service import get_or_create_user, update_plan
from core.models.base import utc_now


def _flip(text: str, index: int) -> str:
    replacement = "B" if text[index] == "A" else "A"
    return text[:index] + replacement + text[index + 1:]


class CredentialIssuerTestCase(unittest.TestCase):
    def setUp(self):
        self.now = utc_now().replace(microsecond=0)
        self.user = SimpleNamespace(id="user-1", email="a@x.com", plan="pro")

    def test_round_trip_preserves_claims(self):
        credential = issue(self.user, method=METHOD_FEDERATED, now=self.now)
        check = validate(credential.token, now=self.now + timedelta(minutes=1))

        self.assertEqual(check.status, CredentialStatus.VALID)
        self.assertEqual(check.claims["sub"], "user-1")
        self.assertEqual(check.claims["email"], "a@x.com")
        self.assertEqual(check.claims["plan"], "pro")
        self.assertEqual(check.claims["amr"], METHOD_FEDERATED)

    def test_lifetime_depends_on_login_method(self):
        magic = issue(self.user, method=METHOD_MAGIC_LINK, now=self.now)
        primary = issue(self.user, method=METHOD_FEDERATED, now=self.now)
        self.assertEqual(magic.expires_at - self.now, timedelta(days=7))
        self.assertEqual(primary.expires_at - self.now, timedelta(days=30))

    def test_expired_after_lifetime(self):
        credential = issue(self.user, method=METHOD_MAGIC_LINK, now=self.now)
        self.assertTrue(validate(credential.token, now=self.now + timedelta(days=7) - timedelta(seconds=1)).valid)
        expired = validate(credential.token, now=self.now + timedelta(days=7, seconds=1))
        self.assertEqual(expired.status, CredentialStatus.EXPIRED)
        self.assertEqual(expired.claims, {})

    def test_tampered_payload_is_invalid(self):
        token = issue(self.user, now=self.now).token
        header, payload, signature = token.split(".")
        # 跳过末尾字符，避免只改动 base64 填充位
        for index in range(1, len(payload) - 2, 3):
            forged = ".".join([header, _flip(payload, index), signature])
            check = validate(forged, now=self.now)
            self.assertEqual(check.status, CredentialStatus.INVALID, msg=f"index={index}")
            self.assertEqual(check.claims, {})

    def test_tampered_signature_is_invalid(self):
        token = issue(self.user, now=self.now).token
        header, payload, signature = token.split(".")
        forged = ".".join([header, payload, _flip(signature, len(signature) // 2)])
        self.assertEqual(validate(forged, now=self.now).status, CredentialStatus.INVALID)

    def test_foreign_secret_and_unsigned_tokens_rejected(self):
        claims = {"sub": "user-1", "email": "a@x.com", "plan": "enterprise", "iat": 1, "exp": 4102444800}
        foreign = jwt.encode(claims, "another-secret-0123456789abcdefghijklmnop", algorithm="HS256")
        unsigned = jwt.encode(claims, None, algorithm="none")
        self.assertEqual(validate(foreign, now=self.now).status, CredentialStatus.INVALID)
        self.assertEqual(validate(unsigned, now=self.now).status, CredentialStatus.INVALID)
        self.assertEqual(validate("not-a-token", now=self.now).status, CredentialStatus.INVALID)
        self.assertEqual(validate("", now=self.now).status, CredentialStatus.INVALID)


class CredentialRefreshTestCase(unittest.TestCase):
    def setUp(self):
        self.session = DB.get_session()

    def tearDown(self):
        self.session.close()

    def test_refresh_reflects_plan_change(self):
        user = get_or_create_user(self.session, "a@x.com")
        original = issue(user, method=METHOD_MAGIC_LINK)
        self.assertEqual(original.claims["plan"], "free")

        update_plan(self.session, user.id, "pro")
        result = refresh(self.session, original.token)

        self.assertEqual(result.status, CredentialStatus.VALID)
        self.assertEqual(result.credential.claims["plan"], "pro")
        self.assertEqual(result.credential.claims["sub"], user.id)
        self.assertGreater(result.credential.expires_at - utc_now(), timedelta(days=29))

    def test_refresh_rejects_expired_and_unknown(self):
        user = get_or_create_user(self.session, "a@x.com")
        past = utc_now() - timedelta(days=8)
        stale = issue(user, method=METHOD_MAGIC_LINK, now=past)
        self.assertEqual(refresh(self.session, stale.token).status, CredentialStatus.EXPIRED)

        ghost = issue(SimpleNamespace(id="ghost", email="g@x.com", plan="free"))
        result = refresh(self.session, ghost.token)
        self.assertEqual(result.status, CredentialStatus.INVALID)
        self.assertIsNone(result.credential)


if __name__ == "__main__":
    unittest.main()
