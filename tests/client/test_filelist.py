"""Tests for file-list synchronization."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pytest

from sendsafe.client.api import SendClient
from sendsafe.client.filelist import FileListSync
from sendsafe.client.owned_file import OwnedFile
from sendsafe.client.storage import LocalStorage
from sendsafe.client.user import User
from sendsafe.core.config import ServiceConfig
from sendsafe.core.ece import decrypt_bytes, encrypt_bytes

MakeFile = Callable[..., OwnedFile]


def register(fake_server: Any, owned: OwnedFile) -> None:
    fake_server.files[owned.id] = {
        "owner": owned.owner_token,
        "dlimit": owned.dlimit,
        "dtotal": owned.dtotal,
        "auth_key": owned.keychain.auth_key,
        "has_password": False,
    }


def remote_ids(fake_server: Any, user: User) -> list[str]:
    data = json.loads(decrypt_bytes(fake_server.file_lists["user-1"], user.file_list_key))
    return [record["id"] for record in data["files"]]


def puts(fake_server: Any) -> list[Any]:
    return [r for r in fake_server.requests_to("/api/filelist") if r.method == "PUT"]


@pytest.fixture
def user(
    storage: LocalStorage,
    service_config: ServiceConfig,
    fake_server: Any,
    client: SendClient,
) -> User:
    """A signed-in user."""
    signed_in = User(storage, service_config)
    code, state = fake_server.authorize(signed_in.login())
    signed_in.finish_login(code, state, client)
    return signed_in


class TestAnonymousSync:
    """Tests for syncing without an account."""

    def test_no_remote_requests(
        self,
        storage: LocalStorage,
        service_config: ServiceConfig,
        fake_server: Any,
        client: SendClient,
        make_owned_file: MakeFile,
    ) -> None:
        """Anonymous sync only reconciles local storage."""
        storage.add_file(make_owned_file("a"))
        result = FileListSync(User(storage, service_config), storage, client).sync()

        assert fake_server.requests == []
        assert [f.id for f in storage.files] == ["a"]
        assert result.incoming is False


class TestSignedInSync:
    """Tests for syncing with an account."""

    def test_pushes_local_files(
        self,
        user: User,
        storage: LocalStorage,
        fake_server: Any,
        client: SendClient,
        make_owned_file: MakeFile,
    ) -> None:
        """Local files missing remotely are uploaded encrypted."""
        owned = make_owned_file("a")
        register(fake_server, owned)
        storage.add_file(owned)

        result = FileListSync(user, storage, client).sync()

        assert result.outgoing is True
        assert len(puts(fake_server)) == 1
        assert b"owner-a" not in fake_server.file_lists["user-1"]
        assert remote_ids(fake_server, user) == ["a"]

    def test_second_sync_is_idempotent(
        self,
        user: User,
        storage: LocalStorage,
        fake_server: Any,
        client: SendClient,
        make_owned_file: MakeFile,
    ) -> None:
        """A sync with nothing new does not upload again."""
        owned = make_owned_file("a")
        register(fake_server, owned)
        storage.add_file(owned)
        sync = FileListSync(user, storage, client)
        sync.sync()

        result = sync.sync()

        assert result.incoming is False
        assert result.outgoing is False
        assert len(puts(fake_server)) == 1

    def test_pulls_remote_files(
        self,
        user: User,
        storage: LocalStorage,
        fake_server: Any,
        client: SendClient,
        make_owned_file: MakeFile,
    ) -> None:
        """Files uploaded from another device appear locally."""
        owned = make_owned_file("remote")
        register(fake_server, owned)
        payload = json.dumps({"files": [owned.to_dict()]}).encode("utf-8")
        fake_server.file_lists["user-1"] = encrypt_bytes(payload, user.file_list_key)

        result = FileListSync(user, storage, client).sync()

        assert result.incoming is True
        assert result.outgoing is False
        restored = storage.get_file_by_id("remote")
        assert restored is not None
        assert restored.owner_token == "owner-remote"

    def test_expired_token_signs_out(
        self,
        user: User,
        storage: LocalStorage,
        fake_server: Any,
        client: SendClient,
        make_owned_file: MakeFile,
    ) -> None:
        """A rejected access token ends the session."""
        storage.add_file(make_owned_file("a"))
        fake_server.expire_tokens()

        result = FileListSync(user, storage, client).sync()

        assert result.incoming is True
        assert user.logged_in is False
        assert storage.files == []
        assert puts(fake_server) == []

    def test_unreadable_list_is_ignored(
        self,
        user: User,
        storage: LocalStorage,
        fake_server: Any,
        client: SendClient,
        make_owned_file: MakeFile,
    ) -> None:
        """A manifest that fails to decrypt is treated as empty."""
        fake_server.file_lists["user-1"] = b"not a manifest"
        owned = make_owned_file("a")
        register(fake_server, owned)
        storage.add_file(owned)

        result = FileListSync(user, storage, client).sync()

        assert user.logged_in is True
        assert result.outgoing is True
        assert remote_ids(fake_server, user) == ["a"]

    def test_list_shaped_manifest(
        self,
        user: User,
        storage: LocalStorage,
        fake_server: Any,
        client: SendClient,
        make_owned_file: MakeFile,
    ) -> None:
        """A bare list of records is accepted too."""
        owned = make_owned_file("b")
        register(fake_server, owned)
        payload = json.dumps([owned.to_dict()]).encode("utf-8")
        fake_server.file_lists["user-1"] = encrypt_bytes(payload, user.file_list_key)

        FileListSync(user, storage, client).sync()

        assert storage.get_file_by_id("b") is not None

    def test_expired_files_removed_remotely(
        self,
        user: User,
        storage: LocalStorage,
        fake_server: Any,
        client: SendClient,
        make_owned_file: MakeFile,
    ) -> None:
        """Files the service no longer has are dropped from both lists."""
        kept = make_owned_file("kept")
        register(fake_server, kept)
        storage.add_file(kept)
        storage.add_file(make_owned_file("gone"))

        FileListSync(user, storage, client).sync()

        assert [f.id for f in storage.files] == ["kept"]
        assert remote_ids(fake_server, user) == ["kept"]

    def test_unreachable_counters_keep_files(
        self,
        user: User,
        storage: LocalStorage,
        fake_server: Any,
        client: SendClient,
        make_owned_file: MakeFile,
    ) -> None:
        """A failed counter refresh keeps the file and its old counters."""
        owned = make_owned_file("a", dtotal=1)
        register(fake_server, owned)
        fake_server.files["a"]["dtotal"] = 3
        storage.add_file(owned)
        fake_server.unreachable.add("info")

        result = FileListSync(user, storage, client).sync()

        assert fake_server.requests_to("/api/info")
        assert result.outgoing is True
        assert remote_ids(fake_server, user) == ["a"]
        kept = storage.get_file_by_id("a")
        assert kept is not None
        assert kept.dtotal == 1
        assert kept.dlimit == 5

    def test_failing_counters_keep_files(
        self,
        user: User,
        storage: LocalStorage,
        fake_server: Any,
        client: SendClient,
        make_owned_file: MakeFile,
    ) -> None:
        """A rejected counter refresh does not abort the sync."""
        storage.add_file(make_owned_file("a"))
        fake_server.files["a"] = {"owner": "someone-else", "dlimit": 5, "dtotal": 0}

        result = FileListSync(user, storage, client).sync()

        assert result.outgoing is True
        assert [f.id for f in storage.files] == ["a"]
