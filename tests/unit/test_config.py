import pytest

from shared.config import optional_bool, optional_env, optional_float, optional_int, require_env

pytestmark = [pytest.mark.unit]


def test_require_env_returns_stripped_value(monkeypatch):
    monkeypatch.setenv("PG_PASS", "  secret ")
    assert require_env("PG_PASS") == "secret"


@pytest.mark.parametrize("value", [None, "", "   "])
def test_require_env_rejects_missing_or_blank(monkeypatch, value):
    if value is None:
        monkeypatch.delenv("PG_PASS", raising=False)
    else:
        monkeypatch.setenv("PG_PASS", value)
    with pytest.raises(RuntimeError, match="PG_PASS"):
        require_env("PG_PASS")


def test_optional_env_default(monkeypatch):
    monkeypatch.delenv("NATS_STREAM", raising=False)
    assert optional_env("NATS_STREAM", "SENSOR_DATA") == "SENSOR_DATA"
    monkeypatch.setenv("NATS_STREAM", "READINGS")
    assert optional_env("NATS_STREAM", "SENSOR_DATA") == "READINGS"


def test_optional_int(monkeypatch):
    monkeypatch.delenv("HEALTH_PORT", raising=False)
    assert optional_int("HEALTH_PORT", 8080) == 8080
    monkeypatch.setenv("HEALTH_PORT", "9090")
    assert optional_int("HEALTH_PORT", 8080) == 9090
    monkeypatch.setenv("HEALTH_PORT", "ninety")
    with pytest.raises(RuntimeError, match="HEALTH_PORT"):
        optional_int("HEALTH_PORT", 8080)


def test_optional_float(monkeypatch):
    monkeypatch.setenv("NAK_DELAY_SECONDS", "2.5")
    assert optional_float("NAK_DELAY_SECONDS", 0.0) == 2.5
    monkeypatch.setenv("NAK_DELAY_SECONDS", "soon")
    with pytest.raises(RuntimeError):
        optional_float("NAK_DELAY_SECONDS", 0.0)


@pytest.mark.parametrize(
    "raw,expected",
    [("1", True), ("true", True), ("YES", True), ("on", True), ("0", False), ("off", False)],
)
def test_optional_bool(monkeypatch, raw, expected):
    monkeypatch.setenv("REQUIRE_SUSTAINED_DROUGHT", raw)
    assert optional_bool("REQUIRE_SUSTAINED_DROUGHT") is expected


def test_optional_bool_default(monkeypatch):
    monkeypatch.delenv("REQUIRE_SUSTAINED_DROUGHT", raising=False)
    assert optional_bool("REQUIRE_SUSTAINED_DROUGHT", True) is True
