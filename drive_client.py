import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from googleapiclient.http import MediaIoBaseDownload

FOLDER_MIME_TYPE = 'application/vnd.google-apps.folder'
LIST_PAGE_SIZE = 100
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
LIST_FIELDS = 'nextPageToken, files(id, name, size, md5Checksum, modifiedTime, mimeType)'


@dataclass(frozen=True)
class RemoteEntry:
    """한 번의 동기화 동안 변하지 않는 Drive 파일/폴더 정보."""

    id: str
    name: Optional[str]
    is_folder: bool
    size: Optional[int] = None
    md5: Optional[str] = None
    modified_ms: Optional[int] = None


def parse_modified_time(value):
    """Drive의 RFC 3339 시각 문자열을 epoch 밀리초로 변환합니다.

    Args:
        value (str | None): 예: '2024-05-01T10:20:30.123Z'.

    Returns:
        int | None: epoch 기준 밀리초. 값이 없거나 형식이 잘못되면 None.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return (parsed - EPOCH) // timedelta(milliseconds=1)


def entry_from_drive_item(item):
    """Drive v3 files 리소스(dict)를 RemoteEntry로 변환합니다."""
    size = item.get('size')
    try:
        size = int(size) if size is not None else None
    except (TypeError, ValueError):
        size = None
    return RemoteEntry(
        id=item['id'],
        name=item.get('name'),
        is_folder=item.get('mimeType') == FOLDER_MIME_TYPE,
        size=size,
        md5=item.get('md5Checksum'),
        modified_ms=parse_modified_time(item.get('modifiedTime')),
    )


class DriveDirectoryClient:
    """Drive 폴더 목록 조회와 파일 다운로드를 담당합니다.

    googleapiclient 서비스 객체는 스레드 간에 공유할 수 없으므로,
    service_factory로 스레드마다 별도의 서비스를 만들어 사용합니다.

    Args:
        service_factory (Callable[[], Resource]): Drive v3 서비스를 생성하는 함수.
        page_size (int): 목록 조회 한 페이지의 항목 수.
    """

    def __init__(self, service_factory, page_size=LIST_PAGE_SIZE):
        self._service_factory = service_factory
        self._page_size = page_size
        self._local = threading.local()

    @property
    def service(self):
        service = getattr(self._local, 'service', None)
        if service is None:
            service = self._service_factory()
            self._local.service = service
        return service

    def list_children(self, folder_id):
        """폴더의 하위 항목을 페이지 단위로 모두 가져옵니다.

        Args:
            folder_id (str): Drive 폴더 ID.

        Yields:
            RemoteEntry: 휴지통에 없는 하위 항목.
        """
        page_token = None
        while True:
            results = self.service.files().list(
                q=f"'{folder_id}' in parents and trashed=false",
                fields=LIST_FIELDS,
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
                pageSize=self._page_size,
                pageToken=page_token,
            ).execute()
            for item in results.get('files', []):
                yield entry_from_drive_item(item)
            page_token = results.get('nextPageToken')
            if not page_token:
                break

    def download_to(self, file_id, fh):
        """파일 내용을 열린 바이너리 스트림 fh로 내려받습니다."""
        request = self.service.files().get_media(fileId=file_id, supportsAllDrives=True)
        downloader = MediaIoBaseDownload(fh, request)
        done = False
        while not done:
            status, done = downloader.next_chunk()
            print(f"Download {file_id} {int(status.progress() * 100)}%")
