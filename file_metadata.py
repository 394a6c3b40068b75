import json
import os
from dataclasses import dataclass
from typing import Dict, Optional

ATTRIBUTE_NAME = 'user.googledrivesync'


@dataclass(frozen=True)
class FileMetadata:
    """로컬 파일이 어떤 Drive 파일을 나타내는지 기록한 부가 정보."""

    file_id: str
    md5: Optional[str] = None

    def to_json(self):
        return json.dumps({'fileId': self.file_id, 'md5': self.md5})

    @classmethod
    def from_json(cls, data):
        """JSON 문자열을 해석합니다. 형식이 잘못되었거나 fileId가 없으면 None."""
        try:
            payload = json.loads(data)
        except (TypeError, ValueError):
            return None
        if not isinstance(payload, dict):
            return None
        file_id = payload.get('fileId')
        if not isinstance(file_id, str) or not file_id:
            return None
        md5 = payload.get('md5')
        if not isinstance(md5, str) or not md5:
            md5 = None
        return cls(file_id=file_id, md5=md5)


class XattrMetadataStore:
    """확장 파일 속성(user.googledrivesync)에 메타데이터를 저장합니다.

    Linux 전용 os.getxattr/os.setxattr를 사용합니다. 속성을 지원하지 않는
    파일시스템이거나 값이 손상된 경우 read()는 None을 반환합니다.
    """

    def __init__(self, attribute=ATTRIBUTE_NAME):
        if not hasattr(os, 'setxattr'):
            raise RuntimeError('이 플랫폼은 확장 파일 속성을 지원하지 않습니다.')
        self.attribute = attribute

    def read(self, path):
        try:
            raw = os.getxattr(str(path), self.attribute)
        except OSError:
            return None
        try:
            data = raw.decode('utf-8')
        except UnicodeDecodeError:
            return None
        return FileMetadata.from_json(data)

    def write(self, path, metadata):
        os.setxattr(str(path), self.attribute, metadata.to_json().encode('utf-8'))

    def remove(self, path):
        try:
            os.removexattr(str(path), self.attribute)
        except OSError:
            pass


class MemoryMetadataStore:
    """경로별 메타데이터를 메모리에 보관합니다. 테스트용."""

    def __init__(self):
        self.records: Dict[str, str] = {}

    def read(self, path):
        data = self.records.get(str(path))
        if data is None:
            return None
        return FileMetadata.from_json(data)

    def write(self, path, metadata):
        self.records[str(path)] = metadata.to_json()

    def remove(self, path):
        self.records.pop(str(path), None)
