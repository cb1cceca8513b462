"""Tests for the content-addressed asset registry."""

import pytest

from huddle.collaboration.assets import content_hash


class TestAssetRegistry:
    """Tests for AssetRegistry."""

    @pytest.mark.asyncio
    async def test_put_writes_blob(self, assets):
        """Test storing a blob writes it under its hash."""
        asset = await assets.put(b"png-bytes", "avatar")

        assert asset.hash == content_hash(b"png-bytes")
        assert asset.size == len(b"png-bytes")
        assert asset.url == f"/assets/{asset.hash}/avatar"
        assert assets.path_for(asset.hash).exists()
        assert await assets.read(asset.hash) == b"png-bytes"

    @pytest.mark.asyncio
    async def test_put_empty_rejected(self, assets):
        with pytest.raises(ValueError):
            await assets.put(b"", "avatar")

    @pytest.mark.asyncio
    async def test_identical_content_shares_blob(self, assets):
        """Test a second put of the same bytes adds a reference."""
        first = await assets.put(b"same", "avatar")
        second = await assets.put(b"same", "avatar")
        assert first.hash == second.hash

        assert await assets.delete_by_hash(first.hash) is True
        assert assets.path_for(first.hash).exists()
        assert await assets.get(first.hash) is not None

        assert await assets.delete_by_hash(first.hash) is True
        assert not assets.path_for(first.hash).exists()
        assert await assets.get(first.hash) is None

    @pytest.mark.asyncio
    async def test_delete_unknown_hash(self, assets):
        assert await assets.delete_by_hash("0" * 64) is False

    @pytest.mark.asyncio
    async def test_delete_with_missing_file(self, assets):
        """Test a record whose file vanished is still released."""
        asset = await assets.put(b"gone", "avatar")
        assets.path_for(asset.hash).unlink()

        assert await assets.delete_by_hash(asset.hash) is True
        assert await assets.get(asset.hash) is None

    @pytest.mark.asyncio
    async def test_read_missing(self, assets):
        with pytest.raises(FileNotFoundError):
            await assets.read("f" * 64)

    def test_url_prefix_trailing_slash(self, db, temp_dir):
        from huddle.collaboration.assets import AssetRegistry

        registry = AssetRegistry(db, root=temp_dir, url_prefix="https://cdn.example/")
        assert registry.url_for("abc") == "https://cdn.example/abc/avatar"
