"""Tests for ArtifactCache — layout, three-state presence, write-once semantics."""

from __future__ import annotations

import threading

import pytest

from bootstrapper.core.artifact_cache import ArtifactCache
from bootstrapper.errors import CacheCorruption
from bootstrapper.models.artifacts import ArtifactKey, ArtifactKind, ArtifactStatus, ProverMode

KEY = ArtifactKey(mode=ProverMode.INSERTION, tree_depth=30, batch_size=100)
SOURCE = b"pragma solidity ^0.8.4;\ncontract Verifier {}\n"


class TestLayout:
    def test_key_path(self, cache: ArtifactCache):
        path = cache.path_for(KEY, ArtifactKind.KEYS)
        assert path == cache.base_path / "keys" / "keys_insertion_30_100"

    def test_contract_path(self, cache: ArtifactCache):
        key = ArtifactKey(mode=ProverMode.DELETION, tree_depth=16, batch_size=10)
        path = cache.path_for(key, ArtifactKind.VERIFIER_CONTRACT)
        assert path == cache.base_path / "verifier_contracts" / "deletion_16_10.sol"

    def test_directories_created_on_first_write(self, cache: ArtifactCache):
        assert not cache.base_path.exists()
        cache.write_if_absent(KEY, ArtifactKind.KEYS, b"k")
        assert (cache.base_path / "keys").is_dir()


class TestPresence:
    def test_absent(self, cache: ArtifactCache):
        assert cache.status(KEY, ArtifactKind.KEYS) == ArtifactStatus.ABSENT
        assert cache.has(KEY, ArtifactKind.KEYS) is False

    def test_present(self, cache: ArtifactCache):
        cache.write_if_absent(KEY, ArtifactKind.KEYS, b"key bytes")
        assert cache.status(KEY, ArtifactKind.KEYS) == ArtifactStatus.PRESENT
        assert cache.has(KEY, ArtifactKind.KEYS) is True
        assert cache.read(KEY, ArtifactKind.KEYS) == b"key bytes"

    def test_empty_file_is_corrupt(self, cache: ArtifactCache):
        path = cache.path_for(KEY, ArtifactKind.KEYS)
        path.parent.mkdir(parents=True)
        path.write_bytes(b"")
        assert cache.status(KEY, ArtifactKind.KEYS) == ArtifactStatus.CORRUPT
        with pytest.raises(CacheCorruption) as exc_info:
            cache.has(KEY, ArtifactKind.KEYS)
        assert exc_info.value.path == path
        assert "empty" in exc_info.value.reason

    def test_directory_in_place_of_file_is_corrupt(self, cache: ArtifactCache):
        cache.path_for(KEY, ArtifactKind.KEYS).mkdir(parents=True)
        assert cache.status(KEY, ArtifactKind.KEYS) == ArtifactStatus.CORRUPT

    def test_contract_without_declaration_is_corrupt(self, cache: ArtifactCache):
        path = cache.path_for(KEY, ArtifactKind.VERIFIER_CONTRACT)
        path.parent.mkdir(parents=True)
        path.write_bytes(b"not solidity at all")
        with pytest.raises(CacheCorruption, match="no contract declaration"):
            cache.read(KEY, ArtifactKind.VERIFIER_CONTRACT)

    def test_contract_not_utf8_is_corrupt(self, cache: ArtifactCache):
        path = cache.path_for(KEY, ArtifactKind.VERIFIER_CONTRACT)
        path.parent.mkdir(parents=True)
        path.write_bytes(b"\xff\xfe contract ")
        assert cache.status(KEY, ArtifactKind.VERIFIER_CONTRACT) == ArtifactStatus.CORRUPT

    def test_read_absent_raises(self, cache: ArtifactCache):
        with pytest.raises(FileNotFoundError):
            cache.read(KEY, ArtifactKind.KEYS)


class TestWriteOnce:
    def test_write_returns_true_then_false(self, cache: ArtifactCache):
        assert cache.write_if_absent(KEY, ArtifactKind.VERIFIER_CONTRACT, SOURCE) is True
        assert cache.write_if_absent(KEY, ArtifactKind.VERIFIER_CONTRACT, SOURCE + b"//x") is False
        assert cache.read(KEY, ArtifactKind.VERIFIER_CONTRACT) == SOURCE

    def test_existing_user_file_never_overwritten(self, cache: ArtifactCache):
        path = cache.path_for(KEY, ArtifactKind.VERIFIER_CONTRACT)
        path.parent.mkdir(parents=True)
        custom = b"contract Verifier { /* hand-tuned */ }\n"
        path.write_bytes(custom)
        assert cache.write_if_absent(KEY, ArtifactKind.VERIFIER_CONTRACT, SOURCE) is False
        assert path.read_bytes() == custom

    def test_write_over_corrupt_raises_and_keeps_file(self, cache: ArtifactCache):
        path = cache.path_for(KEY, ArtifactKind.KEYS)
        path.parent.mkdir(parents=True)
        path.write_bytes(b"")
        with pytest.raises(CacheCorruption):
            cache.write_if_absent(KEY, ArtifactKind.KEYS, b"fresh")
        assert path.read_bytes() == b""

    def test_refuses_empty_data(self, cache: ArtifactCache):
        with pytest.raises(CacheCorruption, match="refusing"):
            cache.write_if_absent(KEY, ArtifactKind.KEYS, b"")
        assert cache.status(KEY, ArtifactKind.KEYS) == ArtifactStatus.ABSENT

    def test_no_temp_files_left_behind(self, cache: ArtifactCache):
        cache.write_if_absent(KEY, ArtifactKind.KEYS, b"data")
        cache.write_if_absent(KEY, ArtifactKind.KEYS, b"other")
        names = [p.name for p in (cache.base_path / "keys").iterdir()]
        assert names == ["keys_insertion_30_100"]

    def test_concurrent_writers_single_winner(self, cache: ArtifactCache):
        results: list[bool] = []
        lock = threading.Lock()

        def writer(i: int) -> None:
            won = cache.write_if_absent(KEY, ArtifactKind.KEYS, f"writer-{i}".encode())
            with lock:
                results.append(won)

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert cache.read(KEY, ArtifactKind.KEYS).startswith(b"writer-")
