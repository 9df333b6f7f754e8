# nodelab/utils/paths.py
import os
import re

from nodelab.services.exceptions import InvalidPathError


def resolve_within(base_dir: str, relative_path: str) -> str:
    """
    base_dir 기준 상대 경로를 절대 경로로 변환하고, 결과가 base_dir 안에 있는지 검사합니다.

    아직 존재하지 않는 파일도 검사할 수 있도록 심볼릭 링크는 realpath로 풀어서 비교합니다.

    Raises:
        InvalidPathError: 경로가 비어있거나 base_dir 밖을 가리킬 때.
    """
    if not relative_path or not relative_path.strip():
        raise InvalidPathError("Path must not be empty.")

    base = os.path.realpath(base_dir)
    full_path = os.path.realpath(os.path.join(base, relative_path))

    if os.path.commonpath([base, full_path]) != base or full_path == base:
        raise InvalidPathError(f"{relative_path} is outside the allowed directory")
    return full_path


def sanitize_identifier(value: str) -> str:
    """영숫자가 아닌 문자를 '-'로 바꾸고, 연속된 '-'를 하나로 줄인 소문자 식별자를 만듭니다."""
    return re.sub(r"-+", "-", re.sub(r"[^a-z0-9]", "-", value.lower())).strip("-")
