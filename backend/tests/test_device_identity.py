"""
Device identity tests.

Covers:
  1. Rolling-hash fixtures (ASCII, non-BMP characters, empty input)
  2. Signal joining rules
  3. Persisted get-or-create behaviour and failure tolerance
"""
from pathlib import Path
from unittest.mock import patch

from device_identity import (
    DeviceIdentity,
    EMPTY_DEVICE_ID,
    collect_environment_signals,
    derive_device_id,
)


# ── 1. Hash fixtures ──────────────────────────────────────────────────────────

def test_known_signal_set():
    signals = ["Mozilla/5.0", "1920x1080", "cd24", "Europe/Berlin", "en-US", "hc8"]
    assert derive_device_id(signals) == "0df805b4"


def test_single_character():
    assert derive_device_id(["a"]) == "00000061"


def test_negative_hash_uses_absolute_value():
    """'UA|1920x1080' wraps negative in 32 bits; the id is abs(h)."""
    assert derive_device_id(["UA", "1920x1080"]) == "20917647"


def test_hash_runs_over_utf16_code_units():
    """An emoji is two UTF-16 units (a surrogate pair), not one code point."""
    assert derive_device_id(["😀x"]) == "03469f75"


def test_empty_input():
    assert derive_device_id([]) == EMPTY_DEVICE_ID
    assert derive_device_id([None, ""]) == EMPTY_DEVICE_ID


# ── 2. Joining ────────────────────────────────────────────────────────────────

def test_empty_signals_are_dropped_before_joining():
    assert derive_device_id(["UA", None, "", "1920x1080"]) == derive_device_id(["UA", "1920x1080"])


def test_ids_are_eight_lowercase_hex_chars():
    for signals in (["x"], ["Mozilla/5.0", "Linux"], ["a" * 500]):
        device_id = derive_device_id(signals)
        assert len(device_id) == 8
        assert device_id == device_id.lower()
        int(device_id, 16)


def test_collect_signals_includes_user_agent_first():
    signals = collect_environment_signals("TestAgent/1.0")
    assert signals[0] == "TestAgent/1.0"
    assert all(isinstance(s, str) and s for s in signals)


def test_failing_probe_is_skipped():
    with patch("device_identity.platform.system", side_effect=OSError("no uname")):
        signals = collect_environment_signals("TestAgent/1.0")
    assert "TestAgent/1.0" in signals


# ── 3. Persistence ────────────────────────────────────────────────────────────

def test_get_or_create_persists_and_is_idempotent(tmp_path: Path):
    store = tmp_path / "lessonguard" / "device_id"
    identity = DeviceIdentity(store, user_agent="TestAgent/1.0")
    first = identity.get_or_create()
    assert store.read_text() == first
    assert DeviceIdentity(store, user_agent="OtherAgent/2.0").get_or_create() == first


def test_existing_id_is_returned_verbatim(tmp_path: Path):
    store = tmp_path / "device_id"
    store.write_text("deadbeef\n")
    assert DeviceIdentity(store).get_or_create() == "deadbeef"


def test_unwritable_store_still_returns_an_id(tmp_path: Path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file in the way")
    identity = DeviceIdentity(blocker / "device_id", user_agent="TestAgent/1.0")
    device_id = identity.get_or_create()
    assert len(device_id) == 8
