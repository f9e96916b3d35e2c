"""
Tests for the attestation verifier.

Tests:
- Check ordering: domain, certificate, predicate, proof
- Structural proof checks against the verification key
- Binding of public inputs to the session and response
- Pluggable pairing check and the production requirement for one
- Predicate helpers
"""

import os
import sys
import time
from dataclasses import replace

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from attestation import ProofObject, ResponseDescriptor
from conftest import StaticKeyLoader, make_attestation
from errors import CertificateExpired, DomainMismatch, PredicateFailed, ProofInvalid
from verifier import (
    BN254_FIELD_MODULUS,
    AttestationVerifier,
    VerificationResult,
    field_at_least,
    field_equals,
    raise_for_result,
    status_ok,
)


@pytest.fixture
def verifier():
    return AttestationVerifier(StaticKeyLoader(), production=False)


class TestCheckOrder:
    """Checks run in order and stop at the first failure."""

    def test_valid_attestation(self, verifier):
        result = verifier.verify(make_attestation(), "api.github.com")
        assert result == VerificationResult.ok()

    def test_domain_is_case_insensitive(self, verifier):
        assert verifier.verify(make_attestation(), "API.GitHub.com").valid

    def test_domain_mismatch_first(self, verifier):
        """A wrong domain should fail even when everything else is broken too."""
        attestation = make_attestation(cert_valid_to=0, proof=ProofObject.placeholder())
        result = verifier.verify(attestation, "api.twitter.com")
        assert not result.valid
        assert result.code == DomainMismatch.reason

    def test_expired_certificate(self, verifier):
        attestation = make_attestation(cert_valid_to=int(time.time()) - 10)
        result = verifier.verify(attestation, "api.github.com")
        assert result.code == CertificateExpired.reason

    def test_empty_certificate_chain(self, verifier):
        attestation = make_attestation()
        attestation = replace(attestation, session=replace(attestation.session, certificate_chain=()))
        assert verifier.verify(attestation, "api.github.com").code == CertificateExpired.reason

    def test_predicate_before_proof(self, verifier):
        """A failing predicate should be reported even when the proof is a placeholder."""
        attestation = make_attestation(body={"followers": 10}, proof=ProofObject.placeholder())
        result = verifier.verify(attestation, "api.github.com", predicate=field_at_least("followers", 100))
        assert result.code == PredicateFailed.reason

    def test_check_proof_false_skips_proof(self, verifier):
        attestation = make_attestation(proof=ProofObject.placeholder())
        assert verifier.verify(attestation, "api.github.com", check_proof=False).valid
        assert not verifier.verify(attestation, "api.github.com").valid

    def test_verify_does_not_mutate(self, verifier):
        attestation = make_attestation()
        snapshot = attestation.to_dict()
        verifier.verify(attestation, "api.github.com")
        assert attestation.to_dict() == snapshot


class TestProofChecks:
    """Tests for structural proof checks."""

    def test_placeholder_proof_rejected(self, verifier):
        result = verifier.verify(make_attestation(proof=ProofObject.placeholder()), "api.github.com")
        assert result.code == ProofInvalid.reason
        assert "Placeholder" in result.reason

    def test_tag_mismatch_rejected(self, verifier):
        proof = ProofObject(pi_a=("1", "2"), pi_b=(("3", "4"), ("5", "6")), pi_c=("7", "8"), protocol="plonk")
        assert verifier.verify(make_attestation(proof=proof), "api.github.com").code == ProofInvalid.reason

    def test_wrong_public_input_count(self, verifier):
        attestation = make_attestation()
        attestation = replace(attestation, public_inputs=attestation.public_inputs[:4])
        result = verifier.verify(attestation, "api.github.com")
        assert result.code == ProofInvalid.reason
        assert "public inputs" in result.reason

    def test_coordinate_outside_field(self, verifier):
        proof = ProofObject(pi_a=(str(BN254_FIELD_MODULUS), "2"), pi_b=(("3", "4"), ("5", "6")), pi_c=("7", "8"))
        assert verifier.verify(make_attestation(proof=proof), "api.github.com").code == ProofInvalid.reason

    def test_non_numeric_coordinate(self, verifier):
        proof = ProofObject(pi_a=("abc", "2"), pi_b=(("3", "4"), ("5", "6")), pi_c=("7", "8"))
        assert not verifier.verify(make_attestation(proof=proof), "api.github.com").valid

    def test_tampered_body_rejected(self, verifier):
        """Changing the body after capture should break the digest binding."""
        attestation = make_attestation(body={"followers": 10})
        forged = replace(attestation, response=replace(attestation.response, body='{"followers": 99999}'))
        result = verifier.verify(forged, "api.github.com")
        assert result.code == ProofInvalid.reason

    def test_public_inputs_from_other_session_rejected(self, verifier):
        """Public inputs copied from another attestation should not verify."""
        ours = make_attestation(body={"followers": 10})
        theirs = make_attestation(body={"followers": 20})
        mixed = replace(ours, public_inputs=theirs.public_inputs)
        assert verifier.verify(mixed, "api.github.com").code == ProofInvalid.reason

    def test_key_loaded_once_per_verification(self):
        loader = StaticKeyLoader()
        AttestationVerifier(loader, production=False).verify(make_attestation(), "api.github.com")
        assert loader.loads == 1


class TestPairingBackend:
    """Tests for the pluggable proof checker."""

    def test_checker_receives_inputs(self):
        seen = {}

        def checker(vkey, public_inputs, proof):
            seen.update(vkey=vkey, inputs=public_inputs, proof=proof)
            return True

        attestation = make_attestation()
        verifier = AttestationVerifier(StaticKeyLoader(), production=True, proof_checker=checker)
        assert verifier.verify(attestation, "api.github.com").valid
        assert seen["inputs"] == list(attestation.public_inputs)
        assert seen["proof"] == attestation.proof

    def test_checker_rejection(self):
        verifier = AttestationVerifier(StaticKeyLoader(), production=False,
                                       proof_checker=lambda vkey, inputs, proof: False)
        result = verifier.verify(make_attestation(), "api.github.com")
        assert result.code == ProofInvalid.reason

    def test_production_requires_checker(self):
        """Structural checks alone are not enough in production."""
        verifier = AttestationVerifier(StaticKeyLoader(), production=True)
        result = verifier.verify(make_attestation(), "api.github.com")
        assert not result.valid
        assert "pairing" in result.reason


class TestRaiseForResult:
    """Tests for raise_for_result."""

    def test_ok_does_not_raise(self):
        raise_for_result(VerificationResult.ok())

    @pytest.mark.parametrize("error_type", [DomainMismatch, CertificateExpired, PredicateFailed, ProofInvalid])
    def test_raises_matching_type(self, error_type):
        with pytest.raises(error_type):
            raise_for_result(VerificationResult.fail(error_type, "failed"))


class TestPredicates:
    """Tests for predicate helpers."""

    def response(self, body, status=200):
        return ResponseDescriptor(status=status, body=body)

    def test_field_at_least(self):
        predicate = field_at_least("data.public_metrics.followers_count", 100)
        assert predicate(self.response('{"data": {"public_metrics": {"followers_count": 150}}}'))
        assert not predicate(self.response('{"data": {"public_metrics": {"followers_count": 50}}}'))
        assert not predicate(self.response('{"data": {}}'))
        assert not predicate(self.response("not json"))

    def test_field_at_least_list_index(self):
        assert field_at_least("data.0.view_count", 1)(self.response('{"data": [{"view_count": 3}]}'))

    def test_field_equals(self):
        assert field_equals("verified", True)(self.response('{"verified": true}'))
        assert not field_equals("verified", True)(self.response('{"verified": false}'))

    def test_status_ok(self):
        assert status_ok()(self.response("{}", 200))
        assert not status_ok()(self.response("{}", 404))
