import uuid

# '%'는 이중 인코딩을 막기 위해 반드시 가장 먼저 치환합니다.
RESERVED_CHARACTERS = ['%', '<', '>', ':', '"', '/', '\\', '|', '?', '*']
MAX_NUMBERED_CANDIDATES = 10000


def _percent_encode(char):
    return f"%{ord(char):02X}"


def encode_filename(filename):
    """Drive 항목 이름을 로컬 파일시스템에서 사용 가능한 이름으로 변환합니다.

    예약 문자는 퍼센트 인코딩하고, 이름이 공백이나 마침표로 끝나면
    마지막 한 글자만 인코딩합니다. ('.', '..' 도 이 규칙으로 처리됩니다.)

    Args:
        filename (str | None): Drive 항목의 원래 이름.

    Returns:
        str | None: 변환된 이름. 이름이 비어 있으면 None.
    """
    if not filename:
        return None

    for char in RESERVED_CHARACTERS:
        filename = filename.replace(char, _percent_encode(char))

    if filename.endswith(' '):
        filename = filename[:-1] + _percent_encode(' ')
    elif filename.endswith('.'):
        filename = filename[:-1] + _percent_encode('.')
    return filename


def split_extension(filename):
    """파일 이름을 (본문, 확장자)로 나눕니다. 맨 앞의 '.'은 확장자로 보지 않습니다."""
    period = filename.rfind('.')
    if period > 0:
        return filename[:period], filename[period:]
    return filename, ''


def disambiguated_name(filename, iteration):
    """중복 회피용 후보 이름을 만듭니다.

    Args:
        filename (str): 인코딩된 원래 파일 이름.
        iteration (int): 1부터 시작하는 후보 번호.

    Returns:
        str: 'name (N).ext' 형태의 이름. 번호가 한도를 넘으면 임의의 UUID를 사용합니다.
    """
    prefix, suffix = split_extension(filename)
    if iteration > MAX_NUMBERED_CANDIDATES:
        return f"{prefix} ({uuid.uuid4()}){suffix}"
    return f"{prefix} ({iteration}){suffix}"
