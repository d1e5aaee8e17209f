from __future__ import annotations

from pathlib import Path, PurePosixPath


class PathSafetyError(ValueError):
    pass


def validate_object_key(raw_key: str) -> str:
    if not raw_key or not raw_key.strip():
        raise PathSafetyError("Object key cannot be blank")
    if raw_key.startswith("/"):
        raise PathSafetyError("Object key must be relative")
    if "\\" in raw_key:
        raise PathSafetyError("Backslashes are not allowed in object keys")
    if "\x00" in raw_key:
        raise PathSafetyError("NUL bytes are not allowed in object keys")
    if ".." in PurePosixPath(raw_key).parts:
        raise PathSafetyError("Path traversal is not allowed")
    return raw_key


def join_key_prefix(prefix: str | None, key: str) -> str:
    if not prefix:
        return key
    return f"{prefix.strip('/')}/{key}"


def strip_key_prefix(prefix: str | None, key: str) -> str:
    if not prefix:
        return key
    marker = f"{prefix.strip('/')}/"
    return key[len(marker):] if key.startswith(marker) else key


def resolve_under_root(root: Path, raw_key: str) -> Path:
    key = validate_object_key(raw_key)
    base = root.resolve(strict=False)
    candidate = (base / key).resolve(strict=False)

    if candidate != base and base in candidate.parents:
        return candidate

    raise PathSafetyError("Object key escapes storage root")
