"""
Unit tests for the record codec.
"""

import pytest

from jobstore.db.codec import decode, encode


class TestEncode:
    """Tests for domain -> record conversion."""

    def test_renames_id_to_primary_key(self):
        """Test that the identity moves to the primary-key name."""
        record = encode({"id": "j1", "status": "ready", "queue": "email"})

        assert record == {"job_id": "j1", "status": "ready", "queue": "email"}

    def test_filter_without_id_passes_through(self):
        """Test that partial filters without an id are unchanged."""
        query = {"status": "ready"}

        assert encode(query) == query

    def test_does_not_mutate_input(self):
        """Test that the input document is left alone."""
        document = {"id": "j1", "status": "ready"}

        encode(document)

        assert document == {"id": "j1", "status": "ready"}

    def test_conflicting_names_rejected(self):
        """Test that a document with both identity names is refused."""
        with pytest.raises(ValueError):
            encode({"id": "j1", "job_id": "j2"})


class TestDecode:
    """Tests for record -> domain conversion."""

    def test_renames_primary_key_to_id(self):
        """Test that the primary key comes back as id."""
        assert decode({"job_id": "j1", "attempts": 2}) == {"id": "j1", "attempts": 2}

    def test_record_without_primary_key_passes_through(self):
        """Test that partial records are unchanged."""
        assert decode({"status": "processing"}) == {"status": "processing"}

    @pytest.mark.parametrize(
        "document",
        [
            {"id": "j1", "status": "ready", "attempts": 0, "expire_ms": 5000},
            {"id": "j2", "payload": {"nested": [1, 2]}},
            {"status": "ready"},
            {},
        ],
    )
    def test_symmetric(self, document: dict):
        """Test that decoding an encoded document gives it back."""
        assert decode(encode(document)) == document
