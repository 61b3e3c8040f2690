"""
Unit tests for PKCE generation.
"""

import base64
import hashlib

from service_broker.app.pkce import (
    STATE_ALPHABET,
    STATE_LENGTH,
    UNRESERVED_ALPHABET,
    VERIFIER_MAX_LENGTH,
    VERIFIER_MIN_LENGTH,
    generate_challenge,
    generate_pair,
    generate_state,
    generate_verifier,
)


class TestPKCE:
    """Test cases for verifier, challenge and state generation."""

    def test_verifier_length_and_alphabet(self):
        """Test verifiers stay within RFC 7636 bounds."""
        for _ in range(200):
            verifier = generate_verifier()
            assert VERIFIER_MIN_LENGTH <= len(verifier) <= VERIFIER_MAX_LENGTH
            assert set(verifier) <= set(UNRESERVED_ALPHABET)

    def test_verifier_lengths_vary(self):
        """Test verifier length is not fixed."""
        lengths = {len(generate_verifier()) for _ in range(200)}
        assert len(lengths) > 1

    def test_challenge_known_vector(self):
        """Test the RFC 7636 appendix B example."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert generate_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_challenge_is_unpadded_base64url_sha256(self):
        """Test challenge encoding for a generated verifier."""
        verifier = generate_verifier()
        challenge = generate_challenge(verifier)

        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
        assert challenge == expected
        assert len(challenge) == 43
        assert "=" not in challenge
        assert "+" not in challenge and "/" not in challenge

    def test_state(self):
        """Test state length and alphabet."""
        state = generate_state()
        assert len(state) == STATE_LENGTH
        assert set(state) <= set(STATE_ALPHABET)

    def test_pair_is_consistent(self):
        """Test a generated pair's challenge matches its verifier."""
        pair = generate_pair()
        assert pair.method == "S256"
        assert pair.code_challenge == generate_challenge(pair.code_verifier)

    def test_pairs_are_unique(self):
        """Test no two pairs share a verifier or state."""
        pairs = [generate_pair() for _ in range(1000)]
        assert len({p.code_verifier for p in pairs}) == 1000
        assert len({p.state for p in pairs}) == 1000
