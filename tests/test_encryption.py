"""
Tests for the encrypted snapshot layer.

Keys are derived with a low PBKDF2 iteration count to keep the tests fast;
the count travels in each blob so decryption uses the same one.
"""

import json

import pytest

from readsync import ReadSync
from readsync.config import ProviderConfig, load_config
from readsync.errors import ConfigError, EncryptionError, SyncError
from readsync.providers import EncryptedProvider, FolderProvider, SyncProvider, create_provider
from readsync.providers.encrypted import (
    ALGORITHM,
    SALT_LENGTH,
    decode_salt,
    decrypt_payload,
    encode_salt,
    encrypt_payload,
    generate_salt,
    is_encrypted_blob,
    resolve_salt,
    verify_passphrase,
)
from readsync.providers.folder import SYNC_FILE_NAME
from readsync.sync_service import SyncService

from conftest import FakeAlarms, FakeClock, FakeTimer, InMemoryProvider, make_doc, make_item

ITERATIONS = 1000
PASSPHRASE = "correct horse battery"


def _encrypted(folder, passphrase=PASSPHRASE, salt=None):
    return EncryptedProvider(
        FolderProvider(folder), salt or generate_salt(), passphrase, iterations=ITERATIONS,
    )


class TestBlob:
    """Sealing and opening payloads."""

    def test_round_trip(self):
        blob = encrypt_payload({"theme": "dark"}, PASSPHRASE, iterations=ITERATIONS)
        assert is_encrypted_blob(blob)
        assert blob["algorithm"] == ALGORITHM
        assert blob["iterations"] == ITERATIONS
        assert decrypt_payload(blob, PASSPHRASE) == {"theme": "dark"}

    def test_fresh_iv_per_upload(self):
        salt = generate_salt()
        first = encrypt_payload({"a": 1}, PASSPHRASE, salt, iterations=ITERATIONS)
        second = encrypt_payload({"a": 1}, PASSPHRASE, salt, iterations=ITERATIONS)
        assert first["salt"] == second["salt"]
        assert first["iv"] != second["iv"]
        assert first["ciphertext"] != second["ciphertext"]

    def test_wrong_passphrase(self):
        blob = encrypt_payload({"a": 1}, PASSPHRASE, iterations=ITERATIONS)
        with pytest.raises(EncryptionError) as exc_info:
            decrypt_payload(blob, "not the passphrase")
        assert exc_info.value.operation == "decrypt"
        assert verify_passphrase(blob, PASSPHRASE)
        assert not verify_passphrase(blob, "not the passphrase")

    def test_tampered_ciphertext(self):
        blob = encrypt_payload({"a": 1}, PASSPHRASE, iterations=ITERATIONS)
        blob["ciphertext"] = encode_salt(b"x" * 32)
        with pytest.raises(EncryptionError):
            decrypt_payload(blob, PASSPHRASE)

    def test_unsupported_version(self):
        blob = encrypt_payload({"a": 1}, PASSPHRASE, iterations=ITERATIONS)
        blob["version"] = 99
        with pytest.raises(EncryptionError, match="Unsupported"):
            decrypt_payload(blob, PASSPHRASE)

    def test_plain_snapshot_is_not_a_blob(self):
        assert not is_encrypted_blob(make_doc().to_dict())
        assert not is_encrypted_blob([1, 2])


class TestSalt:
    def test_round_trip(self):
        salt = generate_salt()
        assert len(salt) == SALT_LENGTH
        assert decode_salt(encode_salt(salt)) == salt

    @pytest.mark.parametrize("value", ["not base64!", encode_salt(b"short")])
    def test_invalid(self, value):
        with pytest.raises(ConfigError):
            decode_salt(value)


class TestEncryptedProvider:
    """Snapshots stored as ciphertext through a folder."""

    def test_protocol(self, tmp_path):
        assert isinstance(_encrypted(tmp_path), SyncProvider)

    @pytest.mark.asyncio
    async def test_upload_then_download(self, tmp_path):
        provider = _encrypted(tmp_path)
        doc = make_doc("dev", updated_at=7, archive_items=[make_item("a", title="Secret Title")])
        await provider.upload_snapshot(doc)

        raw = (tmp_path / SYNC_FILE_NAME).read_text()
        assert "Secret Title" not in raw
        assert is_encrypted_blob(json.loads(raw))

        loaded = await provider.download_snapshot()
        assert loaded.updated_at == 7
        assert [i.title for i in loaded.archive_items] == ["Secret Title"]

    @pytest.mark.asyncio
    async def test_other_device_with_same_salt(self, tmp_path):
        salt = generate_salt()
        await _encrypted(tmp_path, salt=salt).upload_snapshot(make_doc("a", updated_at=3))
        loaded = await _encrypted(tmp_path, salt=salt).download_snapshot()
        assert loaded.device_id == "a"

    @pytest.mark.asyncio
    async def test_wrong_passphrase_is_sync_error(self, tmp_path):
        await _encrypted(tmp_path).upload_snapshot(make_doc())
        with pytest.raises(SyncError) as exc_info:
            await _encrypted(tmp_path, passphrase="wrong passphrase").download_snapshot()
        assert isinstance(exc_info.value, EncryptionError)

    @pytest.mark.asyncio
    async def test_plain_remote_is_read(self, tmp_path):
        await FolderProvider(tmp_path).upload_snapshot(make_doc("plain", updated_at=2))
        provider = _encrypted(tmp_path)
        loaded = await provider.download_snapshot()
        assert loaded.device_id == "plain"

        await provider.upload_snapshot(loaded)
        assert is_encrypted_blob(json.loads((tmp_path / SYNC_FILE_NAME).read_text()))

    @pytest.mark.asyncio
    async def test_empty_remote(self, tmp_path):
        assert await _encrypted(tmp_path).download_snapshot() is None

    @pytest.mark.asyncio
    async def test_not_ready_without_passphrase(self, tmp_path):
        provider = _encrypted(tmp_path, passphrase=None)
        assert not provider.has_passphrase
        assert not await provider.is_ready_to_sync()
        with pytest.raises(EncryptionError, match="Passphrase not set"):
            await provider.upload_snapshot(make_doc())

        provider.set_passphrase(PASSPHRASE)
        assert await provider.is_ready_to_sync()

    @pytest.mark.asyncio
    async def test_sync_without_passphrase_fails_quietly(self, tmp_path, facade, clock):
        provider = _encrypted(tmp_path, passphrase=None)
        service = SyncService(facade, provider, clock)
        seen = []
        service.on_event(seen.append)
        await facade.update_sync_config(sync_enabled=True)

        assert not await service.is_ready_to_sync()
        result = await service.sync_now()
        assert result.error == "Passphrase not set"
        assert seen == []
        assert not (tmp_path / SYNC_FILE_NAME).exists()

        provider.set_passphrase(PASSPHRASE)
        assert (await service.sync_now()).success
        assert (tmp_path / SYNC_FILE_NAME).exists()


class TestResolveSalt:
    """Joining an existing encrypted remote reuses its salt."""

    @pytest.mark.asyncio
    async def test_fresh_remote_gets_new_salt(self, tmp_path):
        salt = await resolve_salt(FolderProvider(tmp_path), PASSPHRASE)
        assert len(salt) == SALT_LENGTH

    @pytest.mark.asyncio
    async def test_existing_remote_salt_reused(self, tmp_path):
        provider = _encrypted(tmp_path)
        await provider.upload_snapshot(make_doc())
        assert await resolve_salt(FolderProvider(tmp_path), PASSPHRASE) == provider.salt

    @pytest.mark.asyncio
    async def test_existing_remote_wrong_passphrase(self, tmp_path):
        await _encrypted(tmp_path).upload_snapshot(make_doc())
        with pytest.raises(SyncError, match="Incorrect passphrase"):
            await resolve_salt(FolderProvider(tmp_path), "another passphrase")

    @pytest.mark.asyncio
    async def test_short_passphrase(self, tmp_path):
        with pytest.raises(ConfigError):
            await resolve_salt(FolderProvider(tmp_path), "short")


class TestCreateProvider:
    """Encryption switched on from configuration."""

    def test_encrypted_folder(self, tmp_path, monkeypatch):
        monkeypatch.setenv("READSYNC_PASSPHRASE", PASSPHRASE)
        salt = generate_salt()
        provider = create_provider(ProviderConfig("folder", {
            "folder": str(tmp_path), "encrypt": True, "salt": encode_salt(salt),
        }))
        assert isinstance(provider, EncryptedProvider)
        assert isinstance(provider.inner, FolderProvider)
        assert provider.salt == salt
        assert provider.has_passphrase

    def test_passphrase_missing(self, tmp_path, monkeypatch):
        monkeypatch.delenv("READSYNC_PASSPHRASE", raising=False)
        provider = create_provider(ProviderConfig("folder", {
            "folder": str(tmp_path), "encrypt": True, "salt": encode_salt(generate_salt()),
        }))
        assert not provider.has_passphrase

    def test_salt_required(self, tmp_path):
        with pytest.raises(ConfigError, match="salt"):
            create_provider(ProviderConfig("folder", {"folder": str(tmp_path), "encrypt": True}))


class TestConfigureEncrypted:
    """The runtime persists the salt but never the passphrase."""

    @pytest.mark.asyncio
    async def test_configure_and_sync(self, tmp_path):
        shared = tmp_path / "shared"
        shared.mkdir()
        clock = FakeClock()
        runtime = ReadSync(
            tmp_path / "store", provider=InMemoryProvider(), clock=clock,
            timer=FakeTimer(clock), alarms=FakeAlarms(),
        )
        async with runtime as rs:
            provider = await rs.configure_provider("folder", passphrase=PASSPHRASE, folder=str(shared))
            assert isinstance(provider, EncryptedProvider)
            await rs.set_sync_enabled(True)
            assert (await rs.scheduler.sync_now()).success

        assert is_encrypted_blob(json.loads((shared / SYNC_FILE_NAME).read_text()))
        config = load_config(tmp_path / "store")
        assert config.provider.params["encrypt"] is True
        assert decode_salt(config.provider.params["salt"]) == provider.salt
        toml_text = (tmp_path / "store" / "readsync.toml").read_text()
        assert PASSPHRASE not in toml_text

    @pytest.mark.asyncio
    async def test_set_passphrase_needs_encrypted_provider(self, tmp_path):
        clock = FakeClock()
        runtime = ReadSync(
            tmp_path / "store", provider=InMemoryProvider(), clock=clock,
            timer=FakeTimer(clock), alarms=FakeAlarms(),
        )
        async with runtime as rs:
            with pytest.raises(ConfigError):
                rs.set_passphrase(PASSPHRASE)
