import json
from urllib.parse import urlencode

from backend.bunergy.telegram import identity_columns, parse_init_data, start_param, user_language


def _init_data(user=None, **extra):
    fields = dict(extra)
    if user is not None:
        fields["user"] = json.dumps(user)
    fields.setdefault("auth_date", "1773230400")
    return urlencode(fields)


def test_parse_user_from_init_data():
    raw = _init_data({"id": 123456789, "first_name": "Ann", "username": "ann_b", "language_code": "ru-RU"},
                     start_param="REFAB12C")
    user = parse_init_data(raw)
    assert user.id == 123456789
    assert user.display_name == "ann_b"
    assert user_language(user) == "ru"
    assert start_param(raw) == "REFAB12C"


def test_missing_or_broken_user():
    assert parse_init_data(_init_data()) is None
    assert parse_init_data("user=%7Bnot-json") is None
    assert parse_init_data("") is None
    assert start_param(_init_data({"id": 1})) is None


def test_display_name_fallbacks():
    user = parse_init_data(_init_data({"id": 987654321}))
    assert user.display_name == "User654321"
    assert user_language(user) == "en"


def test_identity_columns():
    user = parse_init_data(_init_data({"id": 5, "first_name": "Bo", "is_premium": True}))
    row = identity_columns(user, referral_code="REFXYZ12")
    assert row["display_name"] == "Bo"
    assert row["is_premium"] is True
    assert row["referral_code"] == "REFXYZ12"
    assert "referral_code" not in identity_columns(user)
