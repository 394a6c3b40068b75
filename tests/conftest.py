"""
Shared fixtures for pull tests: an in-memory Drive tree standing in for the
Drive API and helpers for preparing local files.
"""

import hashlib
import os
import threading

import pytest

from drive_client import RemoteEntry
from file_metadata import MemoryMetadataStore

T1 = 1_700_000_000_123
T2 = 1_700_000_555_000


class FakeDriveClient:
    """In-memory Drive tree with list_children/download_to like DriveDirectoryClient."""

    def __init__(self, page_size=2):
        self.page_size = page_size
        self.children = {}
        self.contents = {}
        self.failing_folders = set()
        self.failing_downloads = set()
        self.list_calls = []
        self.download_calls = []
        self._lock = threading.Lock()

    def add_folder(self, parent_id, folder_id, name):
        entry = RemoteEntry(id=folder_id, name=name, is_folder=True)
        self.children.setdefault(parent_id, []).append(entry)
        self.children.setdefault(folder_id, [])
        return entry

    def add_file(self, parent_id, file_id, name, content, modified_ms=T1, md5=None):
        entry = RemoteEntry(
            id=file_id,
            name=name,
            is_folder=False,
            size=len(content),
            md5=md5 if md5 is not None else hashlib.md5(content).hexdigest(),
            modified_ms=modified_ms,
        )
        self.children.setdefault(parent_id, []).append(entry)
        self.contents[file_id] = content
        return entry

    def add_native_document(self, parent_id, file_id, name):
        entry = RemoteEntry(id=file_id, name=name, is_folder=False, modified_ms=T1)
        self.children.setdefault(parent_id, []).append(entry)
        return entry

    def list_children(self, folder_id):
        with self._lock:
            self.list_calls.append(folder_id)
        if folder_id in self.failing_folders:
            raise ConnectionError(f"listing {folder_id} failed")
        entries = self.children.get(folder_id, [])
        for start in range(0, len(entries), self.page_size):
            yield from entries[start:start + self.page_size]

    def download_to(self, file_id, fh):
        with self._lock:
            self.download_calls.append(file_id)
        data = self.contents[file_id]
        if file_id in self.failing_downloads:
            fh.write(data[:len(data) // 2])
            raise ConnectionError(f"download of {file_id} interrupted")
        fh.write(data)


def write_local_file(path, content, modified_ms=None):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    if modified_ms is not None:
        modified_ns = modified_ms * 1_000_000
        os.utime(path, ns=(modified_ns, modified_ns))
    return path


def mtime_ms(path):
    return os.stat(path).st_mtime_ns // 1_000_000


@pytest.fixture
def drive():
    return FakeDriveClient()


@pytest.fixture
def store():
    return MemoryMetadataStore()
