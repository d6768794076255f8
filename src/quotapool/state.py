from dataclasses import dataclass


def mask_token(token: str) -> str:
    if len(token) > 16:  # noqa: PLR2004
        return f"{token[:8]}...{token[-4:]}"
    return f"{token[:4]}..."


@dataclass
class KeyState:
    index: int
    name: str
    token: str
    usage: int = 0
    failed: bool = False
    locked: bool = False
    window_usage: int = 0
    window_started_at: float = 0.0

    def masked(self) -> str:
        return mask_token(self.token)

    def window_ends_at(self, window_seconds: float) -> float:
        return self.window_started_at + window_seconds

    def label(self) -> str:
        # Keys are numbered from 1 in human-facing output.
        return f"key {self.index + 1} ({self.masked()})"
