"""Challenge catalogue.

Challenges are read-only reference data: each one pairs broken starter
code with the pytest script that verifies a fix. They are loaded from YAML
files (one challenge per file) at startup.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Protocol

import yaml

from tentropy_core.exceptions import ConfigError

BUNDLED_CHALLENGES_PATH = Path(__file__).parent / "data" / "challenges"


@dataclass(frozen=True)
class Challenge:
    """A coding challenge."""

    id: str
    test_code: str
    title: str = ""
    difficulty: str = "Easy"
    summary: str = ""
    description: str = ""
    broken_code: str = ""
    success_message: str = ""
    solution_code: str | None = None
    debrief: str | None = None
    requirements: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def has_solution(self) -> bool:
        return bool(self.solution_code)


class ChallengeRepository(Protocol):
    """Lookup of challenges by identifier."""

    async def get_challenge_by_id(self, challenge_id: str) -> Challenge | None:
        """Return the challenge, or None if the id is unknown."""
        ...

    async def list_challenges(self) -> list[Challenge]:
        """Return every challenge in catalogue order."""
        ...


_KNOWN_KEYS = {
    "id",
    "title",
    "difficulty",
    "summary",
    "description",
    "broken_code",
    "test_code",
    "success_message",
    "solution_code",
    "debrief",
    "requirements",
}


def parse_challenge(data: dict[str, Any], source: str = "<dict>") -> Challenge:
    """Build a Challenge from a YAML mapping.

    Args:
        data: Parsed YAML document
        source: Where the document came from, for error messages

    Raises:
        ConfigError: If id or test_code is missing
    """
    if not isinstance(data, dict):
        raise ConfigError(f"{source}: challenge must be a mapping")
    challenge_id = data.get("id")
    test_code = data.get("test_code")
    if not challenge_id or not test_code:
        raise ConfigError(f"{source}: challenge requires 'id' and 'test_code'")

    requirements = data.get("requirements") or []
    if isinstance(requirements, str):
        requirements = [requirements]

    return Challenge(
        id=str(challenge_id),
        test_code=test_code,
        title=data.get("title", str(challenge_id)),
        difficulty=data.get("difficulty", "Easy"),
        summary=data.get("summary", ""),
        description=data.get("description", ""),
        broken_code=data.get("broken_code", ""),
        success_message=data.get("success_message", ""),
        solution_code=data.get("solution_code"),
        debrief=data.get("debrief"),
        requirements=tuple(str(r) for r in requirements),
        metadata={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
    )


def load_challenges(path: str | Path) -> list[Challenge]:
    """Load every ``*.yaml``/``*.yml`` challenge file in a directory.

    Files are read in name order so the catalogue order is stable.
    """
    directory = Path(path)
    if not directory.is_dir():
        raise ConfigError(f"Challenge directory not found: {directory}")

    challenges = []
    files = sorted(p for p in directory.iterdir() if p.suffix in (".yaml", ".yml"))
    for file_path in files:
        try:
            data = yaml.safe_load(file_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigError(f"{file_path}: invalid YAML: {e}") from e
        challenges.append(parse_challenge(data, source=str(file_path)))
    return challenges


class InMemoryChallengeRepository:
    """Challenge repository over a fixed list."""

    def __init__(self, challenges: Iterable[Challenge]) -> None:
        self._challenges: dict[str, Challenge] = {}
        for challenge in challenges:
            if challenge.id in self._challenges:
                raise ConfigError(f"Duplicate challenge id: {challenge.id}")
            self._challenges[challenge.id] = challenge

    @classmethod
    def from_path(cls, path: str | Path | None = None) -> "InMemoryChallengeRepository":
        """Load a repository from a directory (bundled challenges by default)."""
        return cls(load_challenges(path or BUNDLED_CHALLENGES_PATH))

    async def get_challenge_by_id(self, challenge_id: str) -> Challenge | None:
        return self._challenges.get(challenge_id)

    async def list_challenges(self) -> list[Challenge]:
        return list(self._challenges.values())

    def __len__(self) -> int:
        return len(self._challenges)
