"""Static badge catalog and the trigger predicates that award each badge."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional

from pydantic import BaseModel, Field

from .errors import UnknownBadge
from .records import BadgeCategory, Rarity

CATALOG_VERSION = "2024.11"

RARITY_POINTS: Dict[str, int] = {
    "common": 10,
    "rare": 50,
    "epic": 100,
    "legendary": 500,
}

ANY_EVENT = "*"

EVENT_LESSON_COMPLETE = "lesson_complete"
EVENT_QUIZ_ATTEMPT = "quiz_attempt"
EVENT_CODE_SUBMIT = "code_submit"
EVENT_COURSE_COMPLETE = "course_complete"
EVENT_STREAK_UPDATE = "streak_update"


class ActivityStats(BaseModel):
    """Aggregates precomputed by the progress tracker for the acting user."""

    lessons_completed: int = Field(default=0, ge=0)
    quizzes_attempted: int = Field(default=0, ge=0)
    code_submissions: int = Field(default=0, ge=0)
    courses_completed: int = Field(default=0, ge=0)
    current_streak: int = Field(default=0, ge=0)
    last_quiz_score: Optional[float] = Field(default=None, ge=0, le=100)


Predicate = Callable[[str, str, Mapping[str, Any], ActivityStats], bool]


@dataclass(frozen=True)
class BadgeDefinition:
    badge_id: str
    name: str
    category: BadgeCategory
    rarity: Rarity
    icon: str = ""
    description: str = ""
    event_types: FrozenSet[str] = field(default_factory=frozenset)
    predicate: Optional[Predicate] = field(default=None, compare=False, repr=False)

    @property
    def points(self) -> int:
        return RARITY_POINTS[self.rarity]

    @property
    def is_manual(self) -> bool:
        """Manual badges are granted explicitly and never fire from events."""
        return self.predicate is None or not self.event_types

    def triggers_on(self, event_type: str) -> bool:
        if self.is_manual:
            return False
        return ANY_EVENT in self.event_types or event_type in self.event_types

    def matches(
        self,
        user_id: str,
        event_type: str,
        payload: Mapping[str, Any],
        stats: ActivityStats,
    ) -> bool:
        predicate = self.predicate
        if predicate is None or not self.triggers_on(event_type):
            return False
        return bool(predicate(user_id, event_type, payload, stats))


class BadgeCatalog:
    """Read-only, versioned lookup over badge definitions."""

    def __init__(self, definitions: Iterable[BadgeDefinition], *, version: str = CATALOG_VERSION) -> None:
        self.version = version
        self._definitions: Dict[str, BadgeDefinition] = {}
        for definition in definitions:
            if definition.badge_id in self._definitions:
                raise ValueError(f"Duplicate badge id in catalog: {definition.badge_id}")
            if definition.rarity not in RARITY_POINTS:
                raise ValueError(f"Unsupported rarity for {definition.badge_id}: {definition.rarity}")
            self._definitions[definition.badge_id] = definition

    def get(self, badge_id: str) -> BadgeDefinition:
        try:
            return self._definitions[badge_id]
        except KeyError:
            raise UnknownBadge(badge_id) from None

    def candidates(self, event_type: str) -> List[BadgeDefinition]:
        return [definition for definition in self._definitions.values() if definition.triggers_on(event_type)]

    def __contains__(self, badge_id: object) -> bool:
        return badge_id in self._definitions

    def __iter__(self) -> Iterator[BadgeDefinition]:
        return iter(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)


# ----------------------------------------------------------------------
# Predicates
# ----------------------------------------------------------------------


def _first_lesson(user_id: str, event_type: str, payload: Mapping[str, Any], stats: ActivityStats) -> bool:
    return stats.lessons_completed >= 1


def _first_quiz(user_id: str, event_type: str, payload: Mapping[str, Any], stats: ActivityStats) -> bool:
    return stats.quizzes_attempted >= 1


def _first_code(user_id: str, event_type: str, payload: Mapping[str, Any], stats: ActivityStats) -> bool:
    return stats.code_submissions >= 1


def _course_complete(user_id: str, event_type: str, payload: Mapping[str, Any], stats: ActivityStats) -> bool:
    return stats.courses_completed >= 1


def _perfect_quiz(user_id: str, event_type: str, payload: Mapping[str, Any], stats: ActivityStats) -> bool:
    score = payload.get("score", stats.last_quiz_score)
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        return False
    return score >= 100


def _streak_at_least(days: int) -> Predicate:
    def predicate(user_id: str, event_type: str, payload: Mapping[str, Any], stats: ActivityStats) -> bool:
        return stats.current_streak >= days

    predicate.__name__ = f"streak_at_least_{days}"
    return predicate


DEFAULT_BADGES: tuple[BadgeDefinition, ...] = (
    # Completion
    BadgeDefinition(
        "first_lesson", "First Steps", "completion", "common", "🎯",
        "Completed a first lesson.", frozenset({EVENT_LESSON_COMPLETE}), _first_lesson,
    ),
    BadgeDefinition(
        "first_quiz", "Quiz Master", "completion", "common", "📝",
        "Attempted a first quiz.", frozenset({EVENT_QUIZ_ATTEMPT}), _first_quiz,
    ),
    BadgeDefinition(
        "first_code", "Code Warrior", "completion", "common", "💻",
        "Submitted code for the first time.", frozenset({EVENT_CODE_SUBMIT}), _first_code,
    ),
    BadgeDefinition(
        "course_complete", "Course Graduate", "completion", "rare", "🎓",
        "Finished a full course.", frozenset({EVENT_COURSE_COMPLETE}), _course_complete,
    ),
    # Mastery
    BadgeDefinition(
        "perfect_quiz", "Perfect Score", "mastery", "rare", "⭐",
        "Scored 100 on a quiz.", frozenset({EVENT_QUIZ_ATTEMPT}), _perfect_quiz,
    ),
    BadgeDefinition("fast_learner", "Speed Demon", "mastery", "rare", "⚡", "Granted by instructors."),
    BadgeDefinition("code_master", "Code Master", "mastery", "epic", "👑", "Granted by instructors."),
    # Consistency
    BadgeDefinition(
        "streak_7", "Week Warrior", "consistency", "common", "🔥",
        "Kept a 7 day learning streak.", frozenset({ANY_EVENT}), _streak_at_least(7),
    ),
    BadgeDefinition(
        "streak_30", "Monthly Master", "consistency", "rare", "🔥🔥",
        "Kept a 30 day learning streak.", frozenset({ANY_EVENT}), _streak_at_least(30),
    ),
    BadgeDefinition(
        "streak_100", "Century Club", "consistency", "epic", "🔥🔥🔥",
        "Kept a 100 day learning streak.", frozenset({ANY_EVENT}), _streak_at_least(100),
    ),
    # Special
    BadgeDefinition("early_adopter", "Early Adopter", "special", "legendary", "🌱", "Joined during the beta."),
    BadgeDefinition("helper", "Community Helper", "special", "rare", "🤝", "Helped other learners in the forum."),
    BadgeDefinition("mentor", "Mentor", "special", "epic", "🎓", "Mentored other learners."),
)


def default_catalog() -> BadgeCatalog:
    return BadgeCatalog(DEFAULT_BADGES)


__all__ = [
    "ANY_EVENT",
    "ActivityStats",
    "BadgeCatalog",
    "BadgeDefinition",
    "CATALOG_VERSION",
    "DEFAULT_BADGES",
    "EVENT_CODE_SUBMIT",
    "EVENT_COURSE_COMPLETE",
    "EVENT_LESSON_COMPLETE",
    "EVENT_QUIZ_ATTEMPT",
    "EVENT_STREAK_UPDATE",
    "RARITY_POINTS",
    "default_catalog",
]
