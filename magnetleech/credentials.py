"""Loading of web interface credentials: lines of <username>:<bcrypt hash>."""

from __future__ import annotations

import re

__all__ = ["CredentialsError", "load_credentials"]

_LINE = re.compile(rb"[a-z](?:_?[a-z0-9])*:\$2[aby]?\$[0-9]{1,2}\$[./A-Za-z0-9]{53}")


class CredentialsError(ValueError):
    """Raised when a credentials file cannot be read or is malformed."""


def load_credentials(path: str) -> dict[str, bytes]:
    """Map usernames to bcrypt hashes read from the file at path.

    An empty path yields no credentials. A final line without a newline is ignored.
    """
    credentials: dict[str, bytes] = {}
    if not path:
        return credentials
    try:
        handle = open(path, "rb")
    except OSError as exc:
        raise CredentialsError(f"error while opening file: {exc}") from exc
    with handle:
        for lineno, line in enumerate(handle, start=1):
            if not line.endswith(b"\n"):
                break
            line = line[:-1]
            if not _LINE.fullmatch(line):
                shown = line.decode("utf-8", "replace")
                raise CredentialsError(
                    f"on line {lineno}: format should be: <USERNAME>:<BCRYPT HASH>, "
                    f"instead got: {shown}"
                )
            username, hashed = line.split(b":")[:2]
            credentials[username.decode("ascii")] = hashed
    return credentials