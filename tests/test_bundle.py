"""
Tests for exported chain bundles and offline bundle verification.
"""

import copy
import json

import pytest

from courtledger.core import BundleResult, Signer, export_bundle, verify_bundle


CHAIN = "firm-7/dispatch/instr-42"


@pytest.fixture
def keypair():
    return Signer.generate_keypair()


@pytest.fixture
def bundle(ledger, populate):
    populate(ledger, CHAIN, 4, actor="device-9", action="ATTEMPT_LOGGED")
    return export_bundle(ledger, CHAIN)


@pytest.fixture
def signed_bundle(ledger, populate, keypair):
    populate(ledger, CHAIN, 4, actor="device-9", action="ATTEMPT_LOGGED")
    return export_bundle(ledger, CHAIN, signing_key=keypair[0])


class TestExport:

    def test_layout(self, bundle):
        assert set(bundle) == {"_meta", "_verification", "verification", "links"}
        assert bundle["_meta"]["chain_id"] == CHAIN
        assert bundle["_meta"]["link_count"] == 4
        assert bundle["_meta"]["chain_valid_at_export"] is True
        assert bundle["verification"]["valid"] is True
        assert [link["sequence"] for link in bundle["links"]] == [0, 1, 2, 3]

    def test_links_exported_verbatim(self, ledger, bundle):
        stored = ledger.read(CHAIN)
        assert [link["payload_canon"] for link in bundle["links"]] == [
            link.payload_canon for link in stored
        ]
        assert bundle["verification"]["head_hash"] == stored[-1].hash

    def test_is_json_serializable(self, signed_bundle):
        json.dumps(signed_bundle)

    def test_signed_export_attests_head(self, ledger, signed_bundle, keypair):
        attestation = signed_bundle["attestation"]
        assert attestation["chain_id"] == CHAIN
        assert attestation["head_hash"] == ledger.head(CHAIN).hash
        assert attestation["length"] == 4
        assert attestation["public_key"] == keypair[1]

    def test_tampered_chain_exported_unattested(self, ledger, store, populate, keypair):
        """A broken chain is still evidence, but nobody vouches for its head."""
        links = populate(ledger, CHAIN, 3)
        store.replace_link(CHAIN, 2, links[2].model_copy(update={"actor": "intruder"}))

        bundle = export_bundle(ledger, CHAIN, signing_key=keypair[0])

        assert "attestation" not in bundle
        assert bundle["_meta"]["chain_valid_at_export"] is False
        assert bundle["verification"]["violation"]["sequence"] == 2


class TestVerifyBundle:

    def test_valid_unsigned(self, bundle):
        check = verify_bundle(bundle)

        assert check.result == BundleResult.VERIFIED
        assert check.verified
        assert check.chain_id == CHAIN
        assert check.link_count == 4
        assert "Bundle is not attested" in check.warnings
        assert check.report.head_hash == bundle["verification"]["head_hash"]

    def test_valid_signed_after_json_round_trip(self, signed_bundle):
        """What a third party receives is JSON text, not our objects."""
        received = json.loads(json.dumps(signed_bundle))

        check = verify_bundle(received)

        assert check.result == BundleResult.VERIFIED
        assert check.warnings == []
        assert any("Attestation signature verified" in c for c in check.checks_passed)

    def test_payload_edit_detected(self, bundle):
        bundle["links"][1]["payload_canon"] = '{"step":99}'

        check = verify_bundle(bundle)

        assert check.result == BundleResult.TAMPERED
        assert check.checks_failed == ["Chain broken at sequence 1: hash_mismatch"]
        assert check.to_dict()["broken_at_sequence"] == 1

    def test_dropped_link_detected(self, bundle):
        del bundle["links"][2]
        check = verify_bundle(bundle)
        assert check.result == BundleResult.TAMPERED
        assert check.report.broken_at_sequence == 2

    def test_truncation_caught_by_exported_head(self, bundle):
        bundle["links"].pop()
        check = verify_bundle(bundle)
        assert check.result == BundleResult.TAMPERED
        assert check.checks_failed == ["Exported head hash does not match the links"]

    def test_truncation_caught_by_attestation(self, signed_bundle):
        del signed_bundle["verification"]
        signed_bundle["links"].pop()

        check = verify_bundle(signed_bundle)

        assert check.result == BundleResult.TAMPERED
        assert check.checks_failed == ["Attestation does not match the exported chain head"]

    def test_forged_attestation(self, signed_bundle):
        signed_bundle["attestation"]["length"] = 40
        check = verify_bundle(signed_bundle)
        assert check.result == BundleResult.TAMPERED
        assert check.checks_failed == ["Attestation signature invalid"]

    def test_attestation_from_other_key(self, signed_bundle):
        _, other_public = Signer.generate_keypair()
        signed_bundle["attestation"]["public_key"] = other_public
        assert verify_bundle(signed_bundle).result == BundleResult.TAMPERED

    def test_malformed_attestation(self, signed_bundle):
        del signed_bundle["attestation"]["signature"]
        check = verify_bundle(signed_bundle)
        assert check.result == BundleResult.INVALID_FORMAT

    def test_timezone_naive_attestation_time(self, signed_bundle):
        """An attested_at without a timezone is a format error, not a crash."""
        received = json.loads(json.dumps(signed_bundle))
        received["attestation"]["attested_at"] = "2026-01-01T00:00:00"

        check = verify_bundle(received)

        assert check.result == BundleResult.INVALID_FORMAT
        assert any("Attestation malformed" in c for c in check.checks_failed)

    @pytest.mark.parametrize("bad", [None, [], "bundle", 42])
    def test_not_an_object(self, bad):
        check = verify_bundle(bad)
        assert check.result == BundleResult.INVALID_FORMAT
        assert check.checks_failed == ["Bundle must be a JSON object"]

    def test_missing_keys(self, bundle):
        del bundle["links"]
        check = verify_bundle(bundle)
        assert check.result == BundleResult.INVALID_FORMAT
        assert check.checks_failed[0].startswith("Missing required keys")

    def test_malformed_link(self, bundle):
        del bundle["links"][0]["hash"]
        check = verify_bundle(bundle)
        assert check.result == BundleResult.INVALID_FORMAT
        assert check.checks_failed[0].startswith("Link 0 malformed")

    def test_link_not_an_object(self, bundle):
        bundle["links"][3] = "link"
        check = verify_bundle(bundle)
        assert check.result == BundleResult.INVALID_FORMAT
        assert check.checks_failed == ["Link 3 is not an object"]

    def test_foreign_link(self, bundle):
        bundle["links"][1]["chain_id"] = "firm-8/dispatch/instr-42"
        assert verify_bundle(bundle).result == BundleResult.INVALID_FORMAT

    def test_canonicalization_version_warning(self, bundle):
        bundle["_verification"]["canonicalization_version"] = 99
        check = verify_bundle(bundle)
        assert check.verified
        assert any("version mismatch" in w for w in check.warnings)

    def test_input_not_mutated(self, signed_bundle):
        before = copy.deepcopy(signed_bundle)
        verify_bundle(signed_bundle)
        assert signed_bundle == before
