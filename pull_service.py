import hashlib
import io
import os
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, NamedTuple, Optional

from drive_client import RemoteEntry
from file_metadata import FileMetadata
from naming import disambiguated_name, encode_filename

LIST_WORKERS = 1
CHECK_MD5_WORKERS = 2
DOWNLOAD_WORKERS = 4
HASH_CHUNK_SIZE = 1024 * 1024

UNTRACKED_OVERWRITE = 'overwrite'
UNTRACKED_RENAME = 'rename'
UNTRACKED_POLICIES = (UNTRACKED_OVERWRITE, UNTRACKED_RENAME)

STAT_FIELDS = ('folders', 'downloaded', 'adopted', 'skipped', 'no_content', 'conflicts', 'errors')


@dataclass
class PullOptions:
    """Pull 동작 설정.

    Attributes:
        list_workers (int): 폴더 목록 조회 스레드 수.
        check_md5_workers (int): 로컬 MD5 검증 스레드 수.
        download_workers (int): 다운로드 스레드 수.
        verify_hashes (bool): 메타데이터가 불완전할 때 로컬 MD5를 계산해 비교할지 여부.
        untracked_policy (str): 메타데이터 없는 로컬 파일 처리 방식.
            'overwrite'면 그 자리에 덮어쓰고, 'rename'이면 다음 후보 이름을 사용합니다.
    """

    list_workers: int = LIST_WORKERS
    check_md5_workers: int = CHECK_MD5_WORKERS
    download_workers: int = DOWNLOAD_WORKERS
    verify_hashes: bool = True
    untracked_policy: str = UNTRACKED_OVERWRITE

    def __post_init__(self):
        if self.untracked_policy not in UNTRACKED_POLICIES:
            raise ValueError(f"알 수 없는 untracked_policy: {self.untracked_policy}")
        for name in ('list_workers', 'check_md5_workers', 'download_workers'):
            if getattr(self, name) < 1:
                raise ValueError(f"{name}는 1 이상이어야 합니다.")


class ListFolderTask(NamedTuple):
    folder_id: str
    local_path: Path


class CheckMd5Task(NamedTuple):
    entry: RemoteEntry
    local_path: Path


class DownloadTask(NamedTuple):
    entry: RemoteEntry
    local_path: Path


class LocalFileResolution(NamedTuple):
    path: Path
    exists: bool
    metadata: Optional[FileMetadata]


class TaskTracker:
    """모든 풀에 걸쳐 아직 끝나지 않은 작업 수를 셉니다.

    작업은 끝나기 전에 후속 작업을 등록하므로, 카운트가 0이 되는 순간
    더 이상 실행될 작업이 없습니다.
    """

    def __init__(self):
        self._pending = 0
        self._condition = threading.Condition()

    def add(self):
        with self._condition:
            self._pending += 1

    def done(self):
        with self._condition:
            self._pending -= 1
            if self._pending == 0:
                self._condition.notify_all()

    def wait(self, timeout=None):
        with self._condition:
            return self._condition.wait_for(lambda: self._pending == 0, timeout)


class TaskPool:
    """고정 개수의 스레드가 FIFO 순서로 작업을 처리하는 풀.

    작업에서 발생한 예외는 on_error로 전달되고 풀은 계속 동작합니다.
    """

    def __init__(self, name, workers, tracker, on_error):
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=name)
        self._tracker = tracker
        self._on_error = on_error

    def submit(self, handler, task):
        self._tracker.add()
        try:
            self._executor.submit(self._run, handler, task)
        except RuntimeError:
            self._tracker.done()
            raise

    def _run(self, handler, task):
        try:
            handler(task)
        except Exception as error:
            self._on_error(task, error)
        finally:
            self._tracker.done()

    def shutdown(self):
        self._executor.shutdown(wait=True)


class PullStats:
    def __init__(self):
        self._counts = Counter()
        self._lock = threading.Lock()

    def increment(self, key):
        with self._lock:
            self._counts[key] += 1

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {field: self._counts[field] for field in STAT_FIELDS}


def compute_md5(path, chunk_size=HASH_CHUNK_SIZE):
    """로컬 파일의 MD5를 청크 단위로 읽어 계산합니다."""
    digest = hashlib.md5()
    with open(path, 'rb') as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b''):
            digest.update(chunk)
    return digest.hexdigest()


def _same_md5(left, right):
    return bool(left) and bool(right) and left.lower() == right.lower()


def _mtime_ms(stat_result):
    return stat_result.st_mtime_ns // 1_000_000


class PullService:
    """Drive 폴더 트리를 로컬 폴더로 내려받는 동기화 엔진.

    폴더 목록 조회, MD5 검증, 다운로드를 각각 별도의 스레드 풀에서 처리합니다.
    목록 조회 작업은 하위 폴더마다 새 목록 조회 작업을 등록하고, 파일마다
    검증 또는 다운로드 작업을 다른 풀에 등록합니다.

    Args:
        client: list_children(folder_id), download_to(file_id, fh)를 제공하는 Drive 클라이언트.
        metadata_store: read/write/remove(path)를 제공하는 메타데이터 저장소.
        local_root (Path): 로컬 동기화 루트 경로.
        options (PullOptions | None): 동작 설정.
    """

    def __init__(self, client, metadata_store, local_root, options=None):
        self.client = client
        self.metadata = metadata_store
        self.local_root = Path(local_root)
        self.options = options or PullOptions()
        self.stats = PullStats()
        self._tracker = TaskTracker()
        self._claimed: Dict[Path, str] = {}
        self._claim_lock = threading.Lock()
        self._list_pool = TaskPool('list', self.options.list_workers, self._tracker, self._report_error)
        self._check_md5_pool = TaskPool(
            'check-md5', self.options.check_md5_workers, self._tracker, self._report_error
        )
        self._download_pool = TaskPool(
            'download', self.options.download_workers, self._tracker, self._report_error
        )

    def pull(self, root_folder_id):
        """루트 폴더 목록 조회 작업을 등록합니다. 완료는 wait()로 기다립니다."""
        self.local_root.mkdir(parents=True, exist_ok=True)
        self.submit(ListFolderTask(root_folder_id, self.local_root))

    def wait(self):
        """모든 작업이 끝날 때까지 기다린 뒤 풀을 종료하고 통계를 반환합니다."""
        self._tracker.wait()
        for pool in (self._list_pool, self._check_md5_pool, self._download_pool):
            pool.shutdown()
        return self.stats.snapshot()

    def submit(self, task):
        if isinstance(task, ListFolderTask):
            self._list_pool.submit(self.list_folder, task)
        elif isinstance(task, CheckMd5Task):
            self._check_md5_pool.submit(self.check_md5, task)
        elif isinstance(task, DownloadTask):
            self._download_pool.submit(self.download, task)
        else:
            raise TypeError(f"Unknown task: {task!r}")

    def _report_error(self, task, error):
        print(f"Error in {type(task).__name__} ({task.local_path}): {error}")
        self.stats.increment('errors')

    def list_folder(self, task):
        """Drive 폴더 하나의 하위 항목을 처리합니다.

        목록 조회 자체가 실패하면 예외가 풀로 전달되어 이 폴더만 중단됩니다.
        개별 항목의 로컬 I/O 오류나 OS가 거부하는 이름은 해당 항목만 건너뜁니다.
        """
        for entry in self.client.list_children(task.folder_id):
            name = encode_filename(entry.name)
            if not name:
                print(f"Skipping remote item without a name: {entry.id}")
                continue
            try:
                if entry.is_folder:
                    self._handle_folder(entry, task.local_path / name)
                else:
                    self._handle_file(entry, name, task.local_path)
            except (OSError, ValueError) as error:
                print(f"Error handling {task.local_path / name}: {error}")
                self.stats.increment('errors')
        self.stats.increment('folders')

    def _handle_folder(self, entry, local_path):
        with self._claim_lock:
            claimed_by_file = local_path in self._claimed
        if claimed_by_file or (not local_path.is_dir() and os.path.lexists(local_path)):
            print(f"Conflict: local file exists and is not a directory: {local_path}")
            self.stats.increment('conflicts')
            return
        local_path.mkdir(parents=True, exist_ok=True)
        self.submit(ListFolderTask(entry.id, local_path))

    def _handle_file(self, entry, filename, directory):
        if entry.size is None:
            print(f"Remote file {entry.name} has no data, skipping")
            self.stats.increment('no_content')
            return
        resolution = self.resolve_local_file(entry, filename, directory)
        task = self._plan(entry, resolution)
        if task is not None:
            self.submit(task)

    def resolve_local_file(self, entry, filename, directory):
        """Drive 파일이 저장될 로컬 경로를 정합니다.

        filename부터 'name (N).ext' 후보를 차례로 확인하며, 비어 있거나
        같은 Drive 파일(또는 덮어써도 되는 미추적 파일)이 있는 첫 경로를 고릅니다.
        이번 실행에서 다른 Drive 파일에 이미 배정된 경로는 건너뜁니다.

        Args:
            entry (RemoteEntry): 대상 Drive 파일.
            filename (str): 인코딩된 파일 이름.
            directory (Path): 로컬 부모 폴더.

        Returns:
            LocalFileResolution: 선택된 경로, 로컬 파일 존재 여부, 기존 메타데이터.
        """
        candidate = filename
        iteration = 0
        with self._claim_lock:
            while True:
                path = directory / candidate
                owner = self._claimed.get(path)
                if owner is None or owner == entry.id:
                    resolution = self._inspect_candidate(entry, path)
                    if resolution is not None:
                        self._claimed[path] = entry.id
                        return resolution
                iteration += 1
                candidate = disambiguated_name(filename, iteration)

    def _inspect_candidate(self, entry, path):
        if not os.path.lexists(path):
            return LocalFileResolution(path, False, None)
        if path.is_dir():
            return None

        metadata = self.metadata.read(path)
        if metadata is None:
            if self.options.untracked_policy == UNTRACKED_RENAME:
                return None
            print(f"Local file found without metadata, overwriting: {path}")
            return LocalFileResolution(path, True, None)
        if metadata.file_id == entry.id:
            print(f"Local file found with matching metadata: {path}")
            return LocalFileResolution(path, True, metadata)
        return None

    def _plan(self, entry, resolution):
        path = resolution.path
        metadata = resolution.metadata
        if self.options.verify_hashes and resolution.exists and (metadata is None or metadata.md5 is None):
            return CheckMd5Task(entry, path)

        if metadata is not None and _same_md5(metadata.md5, entry.md5):
            stat_result = path.stat()
            if stat_result.st_size == entry.size:
                if entry.modified_ms is not None and _mtime_ms(stat_result) == entry.modified_ms:
                    print(f"ID, MD5, size, and modified time match, skipping download of {path}")
                    self.stats.increment('skipped')
                    return None
                if self.options.verify_hashes:
                    print(f"ID, MD5, size match, but modified time does not, checking local MD5 of {path}")
                    return CheckMd5Task(entry, path)
        return DownloadTask(entry, path)

    def check_md5(self, task):
        """로컬 MD5가 Drive와 같으면 메타데이터만 기록하고, 다르면 다운로드를 등록합니다."""
        entry, path = task.entry, task.local_path
        print(f"Computing MD5 of {path}")
        try:
            local_md5 = compute_md5(path)
        except OSError as error:
            print(f"Could not read {path}, downloading instead: {error}")
            local_md5 = None

        if _same_md5(local_md5, entry.md5):
            print(f"MD5 matches, adding metadata to {path}")
            self._record(entry, path)
            self.stats.increment('adopted')
        else:
            self.submit(DownloadTask(entry, path))

    def download(self, task):
        """Drive 파일을 내려받은 뒤 메타데이터와 수정 시각을 기록합니다.

        전송 중 실패하면 파일 핸들만 닫고 메타데이터는 남기지 않습니다.
        """
        entry, path = task.entry, task.local_path
        print(f"Downloading {path}")
        self.metadata.remove(path)
        with io.FileIO(path, 'wb') as fh:
            self.client.download_to(entry.id, fh)
        self._record(entry, path)
        self.stats.increment('downloaded')
        print(f"Done downloading {path}")

    def _record(self, entry, path):
        self.metadata.write(path, FileMetadata(file_id=entry.id, md5=entry.md5))
        if entry.modified_ms is not None:
            modified_ns = entry.modified_ms * 1_000_000
            os.utime(path, ns=(os.stat(path).st_atime_ns, modified_ns))


def synchronize(client, metadata_store, root_folder_id, local_root, options=None):
    """Drive 폴더 트리를 로컬 폴더로 동기화하고 완료될 때까지 기다립니다.

    Args:
        client: Drive 디렉터리 클라이언트.
        metadata_store: 로컬 파일 메타데이터 저장소.
        root_folder_id (str): 동기화할 Drive 폴더 ID.
        local_root (Path): 로컬 동기화 루트 경로.
        options (PullOptions | None): 동작 설정.

    Returns:
        dict[str, int]: 실행 통계 (downloaded, adopted, skipped, conflicts, errors 등).
    """
    service = PullService(client, metadata_store, local_root, options)
    service.pull(root_folder_id)
    return service.wait()
