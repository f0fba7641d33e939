import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


class FakeClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_game(title: str = "Game", body: str = "") -> str:
    filler = "\n".join(f"    // frame step {i}" for i in range(12))
    return (
        "<!DOCTYPE html>\n<html>\n<head><title>"
        f"{title}</title></head>\n<body>\n<canvas id=\"c\"></canvas>\n<script>\n"
        f"{filler}\n{body}\n</script>\n</body>\n</html>"
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def game_html():
    return make_game
