import argparse
import json
import pickle
import sys
from datetime import datetime
from pathlib import Path
from google.auth.transport.requests import Request
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build

from drive_client import FOLDER_MIME_TYPE, DriveDirectoryClient
from file_metadata import XattrMetadataStore
from pull_service import (
    CHECK_MD5_WORKERS,
    DOWNLOAD_WORKERS,
    LIST_WORKERS,
    UNTRACKED_OVERWRITE,
    UNTRACKED_POLICIES,
    PullOptions,
    synchronize,
)

SCOPES = ['https://www.googleapis.com/auth/drive']
CONFIG_DIR_NAME = '.googledrivesync'
TOKEN_FILE = 'token.pickle'
CREDENTIALS_FILE = 'credentials.json'
DEFAULT_DRIVE_FOLDER_ID = 'root'
SYNC_LOG_FILENAME = 'sync.log'
MAX_LOG_SIZE_BYTES = 10 * 1024 * 1024


def _load_credentials_json(config_dir):
    """credentials.json을 로드합니다. JSON 오류 시 원인을 알기 쉽게 출력합니다."""
    path = config_dir / CREDENTIALS_FILE
    if not path.exists():
        print(f"오류: '{path}' 파일이 없습니다.")
        print("  Google Cloud Console에서 OAuth 2.0 클라이언트 ID(데스크톱)를 만들고")
        print(f"  JSON을 다운로드한 뒤 설정 폴더에 {CREDENTIALS_FILE}으로 저장하세요.")
        sys.exit(1)
    try:
        with open(path, encoding='utf-8') as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        print(f"오류: '{path}' JSON 형식이 잘못되었습니다.")
        print(f"  위치: {e.lineno}번째 줄, {e.colno}번째 칸 (문자 {e.pos})")
        print(f"  내용: {e.msg}")
        if e.doc and e.pos is not None:
            start = max(0, e.pos - 20)
            end = min(len(e.doc), e.pos + 20)
            snippet = e.doc[start:end].replace('\n', ' ')
            print(f"  주변: ...{snippet}...")
        print()
        print("  흔한 원인: 닫는 괄호( }, ] ) 누락, 쉼표(,) 누락/과다, 따옴표 불일치")
        sys.exit(1)
    except UnicodeDecodeError as e:
        print(f"오류: '{path}' 인코딩 문제 (UTF-8이 아닐 수 있음).")
        print(f"  {e}")
        sys.exit(1)


def load_credentials(config_dir, interactive=True):
    """저장된 토큰을 불러오고, 필요하면 갱신하거나 브라우저 인증을 진행합니다.

    Args:
        config_dir (Path): 토큰과 credentials.json이 있는 설정 폴더.
        interactive (bool): False면 새 인증 대신 'init' 실행을 안내하고 종료합니다.

    Returns:
        google.oauth2.credentials.Credentials: 유효한 인증 정보.
    """
    token_path = config_dir / TOKEN_FILE
    creds = None
    if token_path.exists():
        with open(token_path, 'rb') as token:
            creds = pickle.load(token)
    if not creds or not creds.valid:
        if creds and creds.expired and creds.refresh_token:
            creds.refresh(Request())
        elif not interactive:
            print("오류: 저장된 인증 정보가 없습니다. 먼저 'init' 명령을 실행하세요.")
            sys.exit(1)
        else:
            client_config = _load_credentials_json(config_dir)
            flow = InstalledAppFlow.from_client_config(client_config, scopes=SCOPES)
            creds = flow.run_local_server(port=0)
        config_dir.mkdir(parents=True, exist_ok=True)
        with open(token_path, 'wb') as token:
            pickle.dump(creds, token)
    return creds


def make_service_factory(creds):
    """스레드마다 새 Drive 서비스를 만드는 함수를 반환합니다."""
    def _factory():
        return build('drive', 'v3', credentials=creds, cache_discovery=False)
    return _factory


def validate_drive_folder(service, folder_id):
    """입력한 Drive ID가 실제 동기화 가능한 폴더인지 검증합니다.

    Args:
        service: Google Drive API 서비스 객체.
        folder_id (str): 사용자가 입력한 Drive 폴더 ID.

    Raises:
        ValueError: 폴더가 아니거나 휴지통 항목인 경우.
    """
    item = service.files().get(
        fileId=folder_id,
        fields='id, name, mimeType, trashed',
        supportsAllDrives=True,
    ).execute()

    if item.get('trashed'):
        raise ValueError(
            f"선택한 항목 '{item.get('name', folder_id)}'은(는) 휴지통에 있습니다."
        )
    if item.get('mimeType') != FOLDER_MIME_TYPE:
        raise ValueError(
            "입력한 ID가 폴더가 아닙니다. "
            "Drive 폴더 URL(https://drive.google.com/drive/folders/...)의 ID를 사용하세요."
        )


def find_root(path):
    """path부터 상위로 올라가며 설정 폴더(.googledrivesync)가 있는 폴더를 찾습니다.

    Args:
        path (Path): 검색을 시작할 경로.

    Returns:
        Path | None: 설정 폴더를 가진 가장 가까운 폴더. 없으면 None.
    """
    root = path.resolve()
    for candidate in [root, *root.parents]:
        if (candidate / CONFIG_DIR_NAME).exists():
            return candidate
    return None


def resolve_paths(sync_dir, config_dir, cwd=None):
    """동기화 루트와 설정 폴더 경로를 결정합니다.

    우선순위: --sync-dir, --config-dir의 부모, 현재 폴더에서 상위로 찾은 루트, 현재 폴더.

    Returns:
        tuple[Path, Path]: (동기화 루트, 설정 폴더).
    """
    cwd = cwd or Path.cwd()
    root = sync_dir.expanduser().resolve() if sync_dir is not None else None
    config = config_dir.expanduser().resolve() if config_dir is not None else None

    if root is None and config is not None:
        root = config.parent
    if root is None:
        root = find_root(cwd)
    if root is None:
        root = cwd.resolve()
    if config is None:
        config = root / CONFIG_DIR_NAME
    return root, config


def rotate_log_if_needed(log_path, max_size_bytes=MAX_LOG_SIZE_BYTES):
    """로그 파일이 제한 크기를 넘으면 기존 로그를 삭제합니다.

    Args:
        log_path (Path): 로그 파일 경로.
        max_size_bytes (int): 허용 최대 파일 크기(바이트).
    """
    if not log_path.exists():
        return
    if log_path.stat().st_size > max_size_bytes:
        log_path.unlink()


class TeeStream:
    """터미널 출력과 파일 출력을 동시에 수행하는 스트림입니다."""

    def __init__(self, streams):
        self._streams = streams

    def write(self, data):
        for stream in self._streams:
            stream.write(data)

    def flush(self):
        for stream in self._streams:
            stream.flush()


def init(config_dir):
    """OAuth 인증을 진행하고 토큰을 설정 폴더에 저장합니다."""
    config_dir.mkdir(parents=True, exist_ok=True)
    load_credentials(config_dir, interactive=True)
    print(f"Credentials saved to: {config_dir / TOKEN_FILE}")


def pull(sync_dir, config_dir, drive_folder_id, options):
    """Drive 폴더를 로컬 폴더로 내려받습니다.

    Args:
        sync_dir (Path): 로컬 동기화 루트 경로.
        config_dir (Path): 설정 폴더 경로.
        drive_folder_id (str): 동기화할 Drive 폴더 ID.
        options (PullOptions): 동작 설정.

    Returns:
        dict[str, int]: 실행 통계.
    """
    creds = load_credentials(config_dir, interactive=False)
    service_factory = make_service_factory(creds)
    try:
        validate_drive_folder(service_factory(), drive_folder_id)
    except ValueError as error:
        print(f"오류: {error}")
        sys.exit(1)

    client = DriveDirectoryClient(service_factory)
    print("Pulling changes...")
    stats = synchronize(client, XattrMetadataStore(), drive_folder_id, sync_dir, options)
    print_summary(stats)
    return stats


def print_summary(stats):
    print("Pull completed!")
    print(f"  Folders listed: {stats['folders']}")
    print(f"  Downloaded: {stats['downloaded']}")
    print(f"  Adopted by MD5: {stats['adopted']}")
    print(f"  Up to date: {stats['skipped']}")
    print(f"  No content: {stats['no_content']}")
    print(f"  Conflicts: {stats['conflicts']}")
    print(f"  Errors: {stats['errors']}")


def print_usage_guide():
    """명령이 없을 때 사용 가이드를 출력합니다."""
    print("사용법: python sync.py [옵션] <init|pull>")
    print()
    print("명령:")
    print("  init                    Google 계정 인증 후 토큰을 설정 폴더에 저장")
    print("  pull                    Drive 폴더를 로컬 폴더로 내려받기")
    print()
    print("설정 폴더:")
    print(f"  기본값은 <동기화 폴더>/{CONFIG_DIR_NAME} 입니다.")
    print(f"  {CREDENTIALS_FILE}(OAuth 클라이언트)을 이 폴더에 저장한 뒤 init을 실행하세요.")
    print()
    print("예시:")
    print("  python sync.py --sync-dir ~/Drive init")
    print("  python sync.py --sync-dir ~/Drive pull")
    print("  python sync.py --sync-dir ~/Drive --drive-folder-id 1ABC...xyz --download-workers 8 pull")


def build_parser():
    parser = argparse.ArgumentParser(
        description='Google Drive 폴더를 로컬 폴더로 내려받기'
    )
    parser.add_argument(
        'command',
        nargs='?',
        choices=['init', 'pull'],
        help='실행할 명령',
    )
    parser.add_argument(
        '--sync-dir',
        type=Path,
        default=None,
        help='로컬 동기화 폴더 경로 (기본: 설정 폴더가 있는 상위 폴더 또는 현재 폴더)',
    )
    parser.add_argument(
        '--config-dir',
        type=Path,
        default=None,
        help=f'설정 폴더 경로 (기본: <동기화 폴더>/{CONFIG_DIR_NAME})',
    )
    parser.add_argument(
        '--drive-folder-id',
        type=str,
        default=DEFAULT_DRIVE_FOLDER_ID,
        help='Google Drive 폴더 ID (기본: 내 드라이브 루트)',
    )
    parser.add_argument(
        '--list-workers',
        type=int,
        default=LIST_WORKERS,
        help=f'폴더 목록 조회 스레드 수 (기본: {LIST_WORKERS})',
    )
    parser.add_argument(
        '--check-md5-workers',
        type=int,
        default=CHECK_MD5_WORKERS,
        help=f'로컬 MD5 검증 스레드 수 (기본: {CHECK_MD5_WORKERS})',
    )
    parser.add_argument(
        '--download-workers',
        type=int,
        default=DOWNLOAD_WORKERS,
        help=f'다운로드 스레드 수 (기본: {DOWNLOAD_WORKERS})',
    )
    parser.add_argument(
        '--no-verify-hashes',
        action='store_true',
        help='메타데이터가 불완전한 로컬 파일의 MD5 검증 없이 바로 다시 내려받기',
    )
    parser.add_argument(
        '--untracked-policy',
        choices=UNTRACKED_POLICIES,
        default=UNTRACKED_OVERWRITE,
        help='메타데이터 없는 로컬 파일 처리: overwrite(덮어쓰기) 또는 rename(새 이름 사용)',
    )
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        print("오류: 실행할 명령(init 또는 pull)을 지정해 주세요.")
        print()
        print_usage_guide()
        return 1

    try:
        options = PullOptions(
            list_workers=args.list_workers,
            check_md5_workers=args.check_md5_workers,
            download_workers=args.download_workers,
            verify_hashes=not args.no_verify_hashes,
            untracked_policy=args.untracked_policy,
        )
    except ValueError as error:
        print(f"오류: {error}")
        return 1

    sync_dir, config_dir = resolve_paths(args.sync_dir, args.config_dir)
    config_dir.mkdir(parents=True, exist_ok=True)
    log_path = config_dir / SYNC_LOG_FILENAME
    rotate_log_if_needed(log_path)

    stats = None
    with open(log_path, 'a', encoding='utf-8') as log_file:
        start_time = datetime.now().isoformat(timespec='seconds')
        log_file.write(f"\n===== {args.command} started: {start_time} =====\n")
        original_stdout = sys.stdout
        original_stderr = sys.stderr
        sys.stdout = TeeStream([original_stdout, log_file])
        sys.stderr = TeeStream([original_stderr, log_file])
        try:
            if args.command == 'init':
                init(config_dir)
            else:
                stats = pull(sync_dir, config_dir, args.drive_folder_id, options)
        finally:
            end_time = datetime.now().isoformat(timespec='seconds')
            print(f"===== {args.command} ended: {end_time} =====")
            sys.stdout = original_stdout
            sys.stderr = original_stderr

    if stats is not None and stats['errors']:
        return 2
    return 0


if __name__ == '__main__':
    sys.exit(main())
