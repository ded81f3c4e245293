"""Standard stream paths of a container process."""

from dataclasses import dataclass


@dataclass
class Stdio:
    """Paths of stdin, stdout and stderr, and whether a terminal is used."""

    stdin: str = ""
    stdout: str = ""
    stderr: str = ""
    terminal: bool = False

    def is_null(self) -> bool:
        """True when no stream path is set at all."""
        return not (self.stdin or self.stdout or self.stderr)