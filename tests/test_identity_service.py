import unittest

from core.db import DB
from core.exceptions import ValidationError
from core.identity_service import (
    get_or_create_user,
    get_user_by_email,
    serialize_user,
    update_plan,
    update_profile,
    validate_email,
)
from core.models.user import User


class IdentityServiceTestCase(unittest.TestCase):
    def setUp(self):
        self.session = DB.get_session()

    def tearDown(self):
        self.session.close()

    def test_validate_email(self):
        self.assertEqual(validate_email("  a@x.com "), "a@x.com")
        for bad in ["", "   ", "no-at-sign", None, "a@" + "x" * 300]:
            with self.assertRaises(ValidationError):
                validate_email(bad)

    def test_get_or_create_is_stable(self):
        first = get_or_create_user(self.session, "a@x.com")
        second = get_or_create_user(self.session, "a@x.com")
        self.assertEqual(first.id, second.id)
        self.assertEqual(first.plan, "free")
        self.assertEqual(self.session.query(User).count(), 1)

    def test_email_is_case_sensitive_as_stored(self):
        lower = get_or_create_user(self.session, "a@x.com")
        upper = get_or_create_user(self.session, "A@x.com")
        self.assertNotEqual(lower.id, upper.id)
        self.assertIsNone(get_user_by_email(self.session, "A@X.COM"))

    def test_update_plan(self):
        user = get_or_create_user(self.session, "a@x.com")
        updated = update_plan(self.session, user.id, "Pro-Plus")
        self.assertEqual(updated.plan, "pro-plus")
        with self.assertRaises(ValidationError):
            update_plan(self.session, user.id, "platinum")
        with self.assertRaises(ValidationError):
            update_plan(self.session, "missing", "pro")

    def test_update_profile_only_overwrites_non_empty_values(self):
        user = get_or_create_user(self.session, "a@x.com", name="Alice", picture="https://img/a.png")
        update_profile(self.session, user, name="", picture="https://img/b.png")
        data = serialize_user(user)
        self.assertEqual(data["name"], "Alice")
        self.assertEqual(data["picture"], "https://img/b.png")
        self.assertEqual(data["email"], "a@x.com")


if __name__ == "__main__":
    unittest.main()
