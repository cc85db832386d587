"""Team affinity scoring for routing decomposed work to teams."""

import logging
import re
from typing import Optional, Protocol

from agentfleet.app.models import TeamModel

logger = logging.getLogger(__name__)


class TeamAffinityScorer(Protocol):
    """Scores how well a piece of work fits a team."""

    def score(self, task_text: str, team: TeamModel) -> float:
        ...


# family -> (pattern recognizing a team of this family, patterns scored against task text)
KEYWORD_FAMILIES: dict[str, tuple[re.Pattern, list[re.Pattern]]] = {
    "backend": (
        re.compile(r"backend|api|server|platform|service", re.IGNORECASE),
        [
            re.compile(p, re.IGNORECASE)
            for p in (
                r"\bapi\b", r"\brest\b", r"endpoint", r"\bserver\b", r"database",
                r"\bsql\b", r"backend", r"graphql", r"microservice", r"authentication",
            )
        ],
    ),
    "ai": (
        re.compile(r"\bai\b|\bml\b|machine learning|data|llm|intelligence", re.IGNORECASE),
        [
            re.compile(p, re.IGNORECASE)
            for p in (
                r"\bai\b", r"\bllm\b", r"\brag\b", r"embedding", r"\bmodel\b",
                r"data pipeline", r"vector", r"prompt", r"machine learning", r"\bml\b",
            )
        ],
    ),
    "qa": (
        re.compile(r"\bqa\b|quality|test", re.IGNORECASE),
        [
            re.compile(p, re.IGNORECASE)
            for p in (
                r"\btests?\b", r"testing", r"\be2e\b", r"\bjest\b", r"pytest",
                r"validation", r"coverage", r"regression", r"\bqa\b",
            )
        ],
    ),
    "frontend": (
        re.compile(r"frontend|front-end|\bui\b|\bux\b|web|design", re.IGNORECASE),
        [
            re.compile(p, re.IGNORECASE)
            for p in (
                r"\bui\b", r"\bux\b", r"component", r"react", r"\bvue\b", r"\bcss\b",
                r"frontend", r"\bpage\b", r"layout", r"responsive",
            )
        ],
    ),
    "infra": (
        re.compile(r"infra|devops|platform ops|\bsre\b|operations|deploy", re.IGNORECASE),
        [
            re.compile(p, re.IGNORECASE)
            for p in (
                r"docker", r"kubernetes", r"\bci\b", r"\bcd\b", r"deploy", r"terraform",
                r"monitoring", r"infrastructure", r"pipeline", r"helm",
            )
        ],
    ),
}


class KeywordAffinityScorer:
    """
    Default scorer: a team's description selects a keyword family, and a
    task scores one point per family pattern found in its text.
    """

    def __init__(self, families: Optional[dict[str, tuple[re.Pattern, list[re.Pattern]]]] = None):
        self.families = families or KEYWORD_FAMILIES

    def family_for(self, team: TeamModel) -> Optional[str]:
        """First family whose team pattern matches the team's name or description."""
        text = f"{team.name} {team.description or ''}"
        for family, (team_pattern, _) in self.families.items():
            if team_pattern.search(text):
                return family
        return None

    def score(self, task_text: str, team: TeamModel) -> float:
        family = self.family_for(team)
        if family is None:
            return 0.0
        _, patterns = self.families[family]
        return float(sum(1 for pattern in patterns if pattern.search(task_text)))


def select_team(
    scorer: TeamAffinityScorer,
    task_text: str,
    teams: list[TeamModel],
) -> TeamModel:
    """
    Route a task to the highest-scoring team.

    Ties keep the earlier team; when every score is zero the first team wins.

    Raises:
        ValueError: If teams is empty
    """
    if not teams:
        raise ValueError("No teams to route to")

    best_team = teams[0]
    best_score = 0.0
    for team in teams:
        team_score = scorer.score(task_text, team)
        if team_score > best_score:
            best_team = team
            best_score = team_score
    return best_team
