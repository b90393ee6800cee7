"""Shell command construction for remote sessions.

Every externally supplied value (application name, path, username) goes
through quote_arg() and is therefore a single opaque word to the remote
shell. Step code composes commands only from these helpers; no command is
built by interpolating request values into shell text.
"""

import re
import shlex
from dataclasses import dataclass

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True)
class HomePath:
    """A path relative to the remote user's home directory.

    Rendered as "$HOME"/'<rest>' so that the home directory expands while the
    remainder stays quoted.
    """

    relative: str

    def __truediv__(self, other: str) -> "HomePath":
        return HomePath(f"{self.relative.rstrip('/')}/{other}")

    def with_suffix(self, suffix: str) -> "HomePath":
        return HomePath(self.relative + suffix)

    def __str__(self) -> str:
        return f"~/{self.relative}"


Arg = str | int | HomePath


def quote_arg(arg: Arg) -> str:
    """Quote one argument for a POSIX shell."""
    if isinstance(arg, HomePath):
        return '"$HOME"/' + shlex.quote(arg.relative)
    return shlex.quote(str(arg))


def cmd(*args: Arg) -> str:
    """Build a simple command from argv-style parts."""
    return " ".join(quote_arg(a) for a in args)


def sudo(*args: Arg) -> str:
    """Non-interactive sudo. Fails fast instead of prompting for a password."""
    return cmd("sudo", "-n", *args)


def and_then(*commands: str) -> str:
    return " && ".join(commands)


def or_true(command: str) -> str:
    """Run a command whose failure is acceptable."""
    return f"{command} || true"


def write_to(path: Arg) -> str:
    """`cat` stdin into a file, replacing it. Pair with RemoteSession.run(input=...)."""
    return f"cat > {quote_arg(path)}"


def safe_name(value: str) -> str:
    """Reduce a user-supplied name to characters safe in a file name."""
    cleaned = _UNSAFE_NAME_CHARS.sub("_", value.strip())
    return cleaned or "app"


def secret_name(value: str, prefix: str = "PRIVATE_KEY_") -> str:
    """GitHub Actions secret names allow only [A-Z0-9_]."""
    return prefix + re.sub(r"[^A-Za-z0-9]", "_", value).upper()
