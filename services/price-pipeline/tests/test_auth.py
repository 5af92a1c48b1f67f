"""Tests for stored identity tokens."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from auth import NotSignedIn, StoredTokenProvider


class TestStoredTokenProvider:
    @pytest.mark.asyncio
    async def test_file_wins_over_static_token(self, tmp_path: Path):
        token_file = tmp_path / "token"
        token_file.write_text("from-file\n")

        provider = StoredTokenProvider(token="static", token_file=token_file)

        assert await provider.get_valid_token() == "from-file"

    @pytest.mark.asyncio
    async def test_static_token_when_file_missing(self, tmp_path: Path):
        provider = StoredTokenProvider(token=" static ", token_file=tmp_path / "token")

        assert await provider.get_valid_token() == "static"

    @pytest.mark.asyncio
    async def test_store_and_invalidate(self, tmp_path: Path):
        token_file = tmp_path / "token"
        provider = StoredTokenProvider(token_file=token_file)

        provider.store("fresh")
        assert token_file.read_text() == "fresh"
        assert await provider.get_valid_token() == "fresh"

        provider.invalidate()
        assert not token_file.exists()
        with pytest.raises(NotSignedIn):
            await provider.get_valid_token()

    @pytest.mark.asyncio
    async def test_no_token(self):
        with pytest.raises(NotSignedIn):
            await StoredTokenProvider().get_valid_token()
