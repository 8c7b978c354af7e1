import json

import pytest

from ctxvault.bundle.models import PUBLIC_KEY, SIGNATURE
from ctxvault.bundle.writer import BundleWriter, decide_signing
from ctxvault.policy.models import Policy


@pytest.mark.parametrize("policy_fields,flag,env,expected_sign,expected_reason", [
    ({"force_signed_exports": True}, False, False, True, "policy.forceSignedExports"),
    ({"force_signed_exports": True}, None, False, True, "policy.forceSignedExports"),
    ({"sign_exports": True}, False, False, False, "--no-sign"),
    ({}, True, False, True, "--sign"),
    ({"sign_exports": True}, None, False, True, "policy.signExports"),
    ({}, None, True, True, "CTXVAULT_SIGN_EXPORTS"),
    ({}, False, True, False, "--no-sign"),
    ({}, None, False, False, "default"),
])
def test_decide_signing(policy_fields, flag, env, expected_sign, expected_reason):
    decision = decide_signing(Policy(**policy_fields), flag, env)
    assert decision.sign is expected_sign
    assert decision.reason == expected_reason


def test_forced_signing_overrides_no_sign(broker, key_manager, record_store, tmp_path):
    broker.set_flag("forceSignedExports", True)
    writer = BundleWriter(broker, key_manager)
    out = tmp_path / "bundle"
    result = writer.export(record_store.iter_records(), out, sign=False)
    assert result.signed is True
    assert (out / SIGNATURE).exists()
    assert (out / PUBLIC_KEY).exists()
    assert json.loads((out / "manifest.json").read_text())["keyId"] == key_manager.status()["keyId"]


def test_environment_override_signs(broker, key_manager, record_store, tmp_path):
    writer = BundleWriter(broker, key_manager, env_sign=True)
    result = writer.export(record_store.iter_records(), tmp_path / "bundle")
    assert result.signed is True
    assert result.signing_reason == "CTXVAULT_SIGN_EXPORTS"


def test_unsigned_export_creates_no_key(broker, key_manager, record_store, tmp_path):
    writer = BundleWriter(broker, key_manager)
    out = tmp_path / "bundle"
    result = writer.export(record_store.iter_records(), out)
    assert result.signed is False
    assert not (out / SIGNATURE).exists()
    assert key_manager.status() is None
