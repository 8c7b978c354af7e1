import json
import zipfile

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from ctxvault.bundle import codec
from ctxvault.bundle.models import CHECKSUMS, MANIFEST, MAP, NOTES, PUBLIC_KEY, SIGNATURE, VECTORS
from ctxvault.bundle.source import BundleSource
from ctxvault.errors import (
    BundleStructureError,
    BundleWriteError,
    ChecksumMismatchError,
    ImportExitCode,
    PolicyDeniedError,
    SignatureInvalidError,
    UnsignedBundleBlockedError,
)
from ctxvault.policy.models import Policy
from conftest import make_records


def _flip_bit(path, offset=0):
    data = bytearray(path.read_bytes())
    data[offset] ^= 0x01
    path.write_bytes(bytes(data))


def _import_receipts(paths):
    docs = [json.loads(p.read_text()) for p in paths.receipts.glob("*.json")]
    return [doc for doc in docs if doc["command"] == "import-context"]


@pytest.fixture
def unsigned_bundle(writer, record_store, tmp_path):
    out = tmp_path / "bundle"
    writer.export(record_store.iter_records(), out)
    return out


@pytest.fixture
def signed_bundle(writer, record_store, tmp_path):
    out = tmp_path / "signed"
    writer.export(record_store.iter_records(), out, sign=True)
    return out


class TestScenarioA:
    def test_unsigned_roundtrip(self, unsigned_bundle, reader, import_store, records):
        checksums = json.loads((unsigned_bundle / CHECKSUMS).read_text())
        assert sorted(checksums) == sorted([MANIFEST, MAP, VECTORS, NOTES])

        result = reader.import_bundle(unsigned_bundle)
        assert result.verified is True
        assert result.count == 3
        assert result.signed is False
        assert import_store.count() == 3

        imported = {r.id: r for r in import_store.iter_records()}
        for original in records:
            assert imported[original.id] == original

    def test_manifest_contents(self, unsigned_bundle):
        manifest = json.loads((unsigned_bundle / MANIFEST).read_text())
        assert manifest["schemaVersion"] == 1
        assert manifest["type"] == "code"
        assert manifest["count"] == 3
        assert manifest["counts"] == {"records": 3, "vectors": 3, "notes": 2}
        assert manifest["vectors"] == {"dim": 4, "count": 3}
        assert manifest["exporter"]["name"] == "ctxvault"
        assert "keyId" not in manifest

    def test_payload_formats(self, unsigned_bundle):
        lines = (unsigned_bundle / MAP).read_text().splitlines()
        assert lines[0] == "id,file,lang,line_start,line_end,symbol,type,timestamp"
        assert len(lines) == 4
        assert (unsigned_bundle / VECTORS).stat().st_size == 3 * 4 * 4
        notes = [json.loads(line) for line in (unsigned_bundle / NOTES).read_text().splitlines()]
        assert notes == [{"id": "rec-0", "note": "note for 0"}, {"id": "rec-2", "note": "note for 2"}]


class TestScenarioB:
    def test_require_signed_blocks_unsigned(self, unsigned_bundle, reader, broker, import_store):
        broker.set_flag("requireSignedContext", True)
        with pytest.raises(UnsignedBundleBlockedError) as exc_info:
            reader.import_bundle(unsigned_bundle)
        assert exc_info.value.exit_code == ImportExitCode.BLOCKED_UNSIGNED == 2
        assert "ctxvault policy trust import-context" in str(exc_info.value)
        assert import_store.count() == 0

    def test_allow_unsigned_without_token_is_blocked(self, unsigned_bundle, reader, broker, import_store):
        broker.set_flag("requireSignedContext", True)
        with pytest.raises(UnsignedBundleBlockedError, match="trust token"):
            reader.import_bundle(unsigned_bundle, allow_unsigned=True)
        assert import_store.count() == 0

    def test_token_without_flag_is_blocked(self, unsigned_bundle, reader, broker, trust):
        broker.set_flag("requireSignedContext", True)
        trust.grant("import-context", 15)
        with pytest.raises(UnsignedBundleBlockedError, match="--allow-unsigned"):
            reader.import_bundle(unsigned_bundle)


class TestScenarioC:
    def test_trust_token_bypass(self, unsigned_bundle, reader, broker, trust, import_store, paths):
        broker.set_flag("requireSignedContext", True)
        trust.grant("import-context", 15)
        result = reader.import_bundle(unsigned_bundle, allow_unsigned=True)
        assert result.verified is True
        assert result.bypass_used is True
        assert import_store.count() == 3

        [receipt] = [doc for doc in _import_receipts(paths) if doc["success"]]
        assert receipt["extras"]["bypass"]["trustToken"] == "import-context"
        assert receipt["results"]["verified"] is True

    def test_expired_token_no_longer_bypasses(self, unsigned_bundle, reader, broker, trust, clock):
        broker.set_flag("requireSignedContext", True)
        trust.grant("import-context", 1)
        clock.advance(minutes=2)
        with pytest.raises(UnsignedBundleBlockedError):
            reader.import_bundle(unsigned_bundle, allow_unsigned=True)


class TestScenarioD:
    def test_tampered_signed_map_reports_checksum(self, signed_bundle, reader, import_store):
        _flip_bit(signed_bundle / MAP, offset=40)
        with pytest.raises(ChecksumMismatchError) as exc_info:
            reader.import_bundle(signed_bundle)
        assert exc_info.value.exit_code == 4
        assert "map.csv" in str(exc_info.value)
        assert import_store.count() == 0

    @pytest.mark.parametrize("asset", [MANIFEST, MAP, VECTORS, NOTES])
    def test_any_payload_byte_reports_checksum_not_signature(self, signed_bundle, reader, asset):
        _flip_bit(signed_bundle / asset, offset=5)
        with pytest.raises(ChecksumMismatchError) as exc_info:
            reader.import_bundle(signed_bundle)
        assert exc_info.value.asset == asset

    def test_failed_import_emits_receipt(self, signed_bundle, reader, paths):
        _flip_bit(signed_bundle / VECTORS)
        with pytest.raises(ChecksumMismatchError):
            reader.import_bundle(signed_bundle)
        [receipt] = _import_receipts(paths)
        assert receipt["success"] is False
        assert receipt["exitCode"] == 4
        assert receipt["extras"]["verification"]["assets"] == [VECTORS]


class TestSignatures:
    def test_signed_roundtrip(self, signed_bundle, reader, key_manager):
        result = reader.import_bundle(signed_bundle)
        assert result.signed is True
        assert result.key_id == key_manager.status()["keyId"]
        assert result.key_is_active is True

    def test_signed_bundle_passes_require_signed(self, signed_bundle, reader, broker):
        broker.set_flag("requireSignedContext", True)
        assert reader.import_bundle(signed_bundle).verified

    def test_bundle_signed_by_rotated_key_still_verifies(self, signed_bundle, reader, key_manager):
        key_manager.rotate()
        result = reader.import_bundle(signed_bundle)
        assert result.signed is True
        assert result.key_is_active is False

    def test_forged_signature(self, signed_bundle, reader):
        (signed_bundle / SIGNATURE).write_bytes(b"\x00" * 64)
        with pytest.raises(SignatureInvalidError) as exc_info:
            reader.import_bundle(signed_bundle)
        assert exc_info.value.exit_code == 3

    def test_swapped_public_key(self, signed_bundle, reader):
        other = Ed25519PrivateKey.generate().public_key().public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        (signed_bundle / PUBLIC_KEY).write_bytes(other)
        with pytest.raises(SignatureInvalidError, match="does not match"):
            reader.import_bundle(signed_bundle)

    def test_stripped_signature_is_invalid(self, signed_bundle, reader):
        (signed_bundle / SIGNATURE).unlink()
        (signed_bundle / PUBLIC_KEY).unlink()
        with pytest.raises(SignatureInvalidError):
            reader.import_bundle(signed_bundle)


class TestStructure:
    def test_missing_bundle(self, reader, tmp_path):
        with pytest.raises(BundleStructureError) as exc_info:
            reader.import_bundle(tmp_path / "nope")
        assert exc_info.value.exit_code == 5

    @pytest.mark.parametrize("name", [MANIFEST, CHECKSUMS, MAP])
    def test_missing_file(self, unsigned_bundle, reader, name):
        (unsigned_bundle / name).unlink()
        with pytest.raises(BundleStructureError):
            reader.import_bundle(unsigned_bundle)

    def test_half_signed_bundle(self, signed_bundle, reader):
        (signed_bundle / PUBLIC_KEY).unlink()
        with pytest.raises(BundleStructureError, match="without its counterpart"):
            reader.import_bundle(signed_bundle)

    def test_unknown_schema_version(self, unsigned_bundle, reader):
        manifest = json.loads((unsigned_bundle / MANIFEST).read_text())
        manifest["schemaVersion"] = 2
        (unsigned_bundle / MANIFEST).write_text(json.dumps(manifest))
        with pytest.raises(BundleStructureError, match="schemaVersion 2"):
            reader.import_bundle(unsigned_bundle)

    def test_garbage_manifest_is_a_checksum_failure(self, unsigned_bundle, reader):
        (unsigned_bundle / MANIFEST).write_text("not json at all")
        with pytest.raises(ChecksumMismatchError):
            reader.import_bundle(unsigned_bundle)

    def test_checksum_map_missing_an_asset(self, unsigned_bundle, reader):
        checksums = json.loads((unsigned_bundle / CHECKSUMS).read_text())
        del checksums[NOTES]
        (unsigned_bundle / CHECKSUMS).write_text(json.dumps(checksums))
        with pytest.raises(BundleStructureError, match="does not cover notes.jsonl"):
            reader.import_bundle(unsigned_bundle)

    def test_truncated_vectors_with_matching_checksum(self, unsigned_bundle, reader):
        data = (unsigned_bundle / VECTORS).read_bytes()[:-4]
        (unsigned_bundle / VECTORS).write_bytes(data)
        checksums = json.loads((unsigned_bundle / CHECKSUMS).read_text())
        checksums[VECTORS] = codec.sha256_hex(data)
        (unsigned_bundle / CHECKSUMS).write_text(json.dumps(checksums))
        with pytest.raises(BundleStructureError, match="vectors.f32"):
            reader.import_bundle(unsigned_bundle)


class TestZip:
    def test_zip_roundtrip(self, writer, reader, record_store, tmp_path, import_store):
        out = tmp_path / "bundle.zip"
        result = writer.export(record_store.iter_records(), out, sign=True, zip_output=True)
        assert result.zipped is True
        assert out.is_file()
        with zipfile.ZipFile(out) as zf:
            assert sorted(zf.namelist()) == sorted([MANIFEST, MAP, VECTORS, NOTES, CHECKSUMS, SIGNATURE, PUBLIC_KEY])
        assert reader.import_bundle(out).count == 3
        assert import_store.count() == 3
        assert [p.name for p in tmp_path.iterdir() if p.name.startswith(".ctxvault-export-")] == []

    def test_unreadable_archive(self, reader, tmp_path):
        bogus = tmp_path / "bogus.zip"
        bogus.write_bytes(b"PK not really")
        with pytest.raises(BundleStructureError):
            reader.import_bundle(bogus)

    def test_rewritten_member_is_checksum_mismatch(self, writer, reader, record_store, tmp_path):
        out = tmp_path / "bundle.zip"
        writer.export(record_store.iter_records(), out, sign=True, zip_output=True)
        with zipfile.ZipFile(out) as zf:
            members = {name: zf.read(name) for name in zf.namelist()}
        members[MAP] = members[MAP].replace(b"src/", b"lib/", 1)
        out.unlink()
        # fresh archive, so every member carries a valid CRC
        with zipfile.ZipFile(out, "w", zipfile.ZIP_DEFLATED) as zf:
            for name, data in members.items():
                zf.writestr(name, data)

        with pytest.raises(ChecksumMismatchError) as excinfo:
            reader.import_bundle(out)
        assert excinfo.value.exit_code == ImportExitCode.CHECKSUM_MISMATCH
        assert excinfo.value.assets == [MAP]

    def test_corrupt_compressed_member_is_structural(self, writer, reader, record_store, tmp_path, paths):
        out = tmp_path / "bundle.zip"
        writer.export(record_store.iter_records(), out, sign=True, zip_output=True)
        with zipfile.ZipFile(out) as zf:
            info = zf.getinfo(MAP)
        data = bytearray(out.read_bytes())
        header = info.header_offset
        name_len = int.from_bytes(data[header + 26:header + 28], "little")
        extra_len = int.from_bytes(data[header + 28:header + 30], "little")
        start = header + 30 + name_len + extra_len
        for i in range(min(8, info.compress_size)):
            data[start + i] ^= 0xFF
        out.write_bytes(bytes(data))

        with pytest.raises(BundleStructureError) as excinfo:
            reader.import_bundle(out)
        assert excinfo.value.exit_code == ImportExitCode.STRUCTURE
        [receipt] = _import_receipts(paths)
        assert receipt["success"] is False
        assert receipt["exitCode"] == 5

    def test_member_escaping_bundle_root(self, reader, tmp_path):
        out = tmp_path / "evil.zip"
        with zipfile.ZipFile(out, "w") as zf:
            zf.writestr("../outside.txt", b"x")
        with pytest.raises(BundleStructureError, match="escapes"):
            reader.import_bundle(out)

    def test_bundle_source_is_abstract(self, tmp_path):
        with pytest.raises(TypeError):
            BundleSource(tmp_path)


class TestWriterGuards:
    def test_refuses_existing_target(self, writer, record_store, unsigned_bundle):
        with pytest.raises(BundleWriteError, match="already exists"):
            writer.export(record_store.iter_records(), unsigned_bundle)

    def test_refuses_missing_parent(self, writer, record_store, tmp_path):
        with pytest.raises(BundleWriteError):
            writer.export(record_store.iter_records(), tmp_path / "no" / "such" / "bundle")

    def test_path_policy_is_enforced(self, writer, broker, record_store, tmp_path, paths):
        broker.store.save(Policy(allowed_globs=["exports/**"]))
        broker.reload()
        with pytest.raises(PolicyDeniedError):
            writer.export(record_store.iter_records(), tmp_path / "bundle")
        failed = [json.loads(p.read_text()) for p in paths.receipts.glob("*.json")]
        assert failed and failed[0]["success"] is False

    def test_mixed_vector_dimensions(self, writer, tmp_path):
        records = make_records(2)
        records[1] = records[1].model_copy(update={"vector": [1.0, 2.0]})
        with pytest.raises(BundleWriteError, match="differing dimensions"):
            writer.export(records, tmp_path / "bundle")

    def test_records_without_vectors(self, writer, reader, tmp_path, import_store):
        out = tmp_path / "bundle"
        writer.export(make_records(2, dim=0), out)
        assert (out / VECTORS).read_bytes() == b""
        assert reader.import_bundle(out).count == 2

    def test_empty_export(self, writer, reader, tmp_path):
        out = tmp_path / "bundle"
        result = writer.export([], out)
        assert result.record_count == 0
        assert reader.import_bundle(out).count == 0


class TestDelta:
    def test_delta_skips_unchanged_records(self, writer, reader, record_store, records, tmp_path, import_store):
        base = tmp_path / "base"
        writer.export(record_store.iter_records(), base)

        changed = records[0].model_copy(update={"line_end": 99})
        added = make_records(4)[3]
        record_store.ingest([changed, added])

        out = tmp_path / "delta"
        result = writer.export(record_store.iter_records(), out, delta_from=base)
        assert result.delta.original_count == 4
        assert result.delta.exported_count == 2
        assert result.delta.unchanged_skipped == 2
        assert result.delta.base_manifest_sha256 == codec.sha256_hex((base / MANIFEST).read_bytes())

        manifest = json.loads((out / MANIFEST).read_text())
        assert manifest["delta"]["unchangedSkipped"] + manifest["delta"]["exportedCount"] == 4
        assert reader.import_bundle(out).count == 2
        assert {r.id for r in import_store.iter_records()} == {"rec-0", "rec-3"}
