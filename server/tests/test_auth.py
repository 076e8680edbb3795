import time
from types import SimpleNamespace

from jose import jwt

from hirepipe.core.services import auth

SECRET = "test-secret"


def _token(**claims):
    values = {"sub": "user-1", "email": "boss@example.com", "role": "employer", "exp": int(time.time()) + 600}
    values.update(claims)
    return jwt.encode(values, SECRET, algorithm="HS256")


def _use_settings(monkeypatch):
    settings = SimpleNamespace(jwt_secret_key=SECRET, jwt_algorithm="HS256")
    monkeypatch.setattr(auth, "get_settings", lambda: settings)


def test_decode_token_reads_claims(monkeypatch):
    _use_settings(monkeypatch)

    payload = auth.decode_token(_token())

    assert payload.sub == "user-1"
    assert payload.role == "employer"


def test_decode_token_rejects_bad_tokens(monkeypatch):
    _use_settings(monkeypatch)

    assert auth.decode_token(_token(exp=int(time.time()) - 10)) is None
    assert auth.decode_token(_token(role="superuser")) is None
    assert auth.decode_token(jwt.encode({"sub": "user-1"}, SECRET, algorithm="HS256")) is None
    assert auth.decode_token(jwt.encode({"sub": "x"}, "other-secret", algorithm="HS256")) is None
    assert auth.decode_token("not-a-token") is None
