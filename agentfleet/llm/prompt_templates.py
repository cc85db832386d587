"""Prompt templates for decomposition, execution, planning and review."""

from typing import Optional


DECOMPOSITION_SYSTEM_PROMPT = (
    "You are a software delivery lead breaking business goals into projects and "
    "tasks for a fleet of autonomous engineering agents. Respond with JSON only."
)

EXECUTION_SYSTEM_PROMPT = (
    "You are an autonomous software engineer. Complete the task you are given and "
    "report the concrete result: code, commands run, and files changed."
)

REVIEW_SYSTEM_PROMPT = (
    "You are reviewing delivered engineering work. Decide what happens next and "
    "respond with JSON only."
)

PLANNING_SYSTEM_PROMPT = (
    "You are an engineering manager planning your team's work. Respond with JSON only."
)

HOUSE_CONVENTIONS = [
    "Keep modules small and focused; one responsibility per module",
    "Every public function has type hints and a docstring",
    "New behavior ships with automated tests",
    "Configuration comes from environment variables, never hard-coded secrets",
    "Log with module-level loggers; no print statements in library code",
    "Prefer explicit error types over returning None on failure",
]


def _bullet_list(items: list[str], empty: str = "- (none)") -> str:
    if not items:
        return empty
    return "\n".join(f"- {item}" for item in items)


def _review_round(review_count: int, max_reviews: int) -> str:
    line = f"Review {review_count + 1} of at most {max_reviews}."
    if review_count + 1 >= max_reviews:
        line += (
            " This is the final review: anything other than complete blocks the task"
            " for an operator."
        )
    return line


def get_goal_decomposition_prompt(
    title: str,
    description: str,
    target_date: Optional[str],
    recent_projects: list[tuple[str, str]],
    conventions: list[str],
    team_skills: list[str],
    worker_count: int,
) -> str:
    """
    Generate prompt for goal decomposition.

    Args:
        title: Goal title
        description: Goal description
        target_date: ISO target date, if any
        recent_projects: (name, description) of existing projects, newest first
        conventions: House coding conventions
        team_skills: Skill tags available across teams
        worker_count: Number of available workers

    Returns:
        Formatted prompt
    """
    projects_section = _bullet_list(
        [f"{name}: {desc}" if desc else name for name, desc in recent_projects]
    )

    return f"""Break the following goal into projects and tasks.

## Goal

Title: {title}
Description: {description or "(no description)"}
Target date: {target_date or "not set"}

## Organization Context

Existing projects (most recent first):
{projects_section}

Coding conventions:
{_bullet_list(conventions)}

Available skills: {", ".join(team_skills) if team_skills else "general"}
Available workers: {worker_count}

## Guidelines

1. Group related work into projects; each project is a deliverable on its own
2. Each task should be 1-8 hours of focused work
3. Reference dependencies by the exact title of another task in the same project
4. Priorities are P1 (most urgent) to P4 (least urgent)
5. Acceptance criteria are concrete, testable statements

## Output Format

Return a JSON object with this exact structure:

```json
{{
  "projects": [
    {{
      "name": "Project name",
      "description": "What this project delivers",
      "tasks": [
        {{
          "title": "Task title",
          "description": "What needs to be done",
          "priority": "P2",
          "estimatedHours": 4,
          "requiredSkills": ["backend"],
          "dependencies": [],
          "acceptanceCriteria": ["Criterion"]
        }}
      ]
    }}
  ]
}}
```

Return ONLY the JSON object, no additional text."""


def get_task_execution_prompt(
    title: str,
    description: str,
    acceptance_criteria: list[str],
    affected_files: list[str],
    working_directory: Optional[str],
    review_feedback: Optional[str] = None,
    last_error: Optional[str] = None,
) -> str:
    """
    Generate prompt for executing one task.

    Args:
        title: Task title
        description: Task description
        acceptance_criteria: Ordered acceptance criteria
        affected_files: Files the task may touch
        working_directory: Project working directory
        review_feedback: Feedback from earlier reviews
        last_error: Error from the previous attempt

    Returns:
        Formatted prompt
    """
    sections = [
        f"# Task: {title}",
        "",
        description or "(no description)",
        "",
        "## Acceptance Criteria",
        _bullet_list(acceptance_criteria),
        "",
        "## Files You May Change",
        _bullet_list(affected_files, empty="- (not restricted)"),
    ]
    if working_directory:
        sections += ["", f"Working directory: {working_directory}"]
    if review_feedback:
        sections += ["", "## Reviewer Feedback To Address", review_feedback]
    if last_error:
        sections += ["", "## Previous Attempt Failed", last_error]
    sections += [
        "",
        "Only change the files listed above. Report what you changed and why.",
    ]
    return "\n".join(sections)


REVIEW_DECISION_SCHEMA = """```json
{
  "action": "complete | rework | add_tasks | redirect",
  "reasoning": "Why this decision",
  "feedback": "What must change (rework)",
  "subtasks": [
    {
      "title": "Follow-up task (add_tasks)",
      "description": "What it covers",
      "priority": "P3",
      "affectedFiles": [],
      "acceptanceCriteria": []
    }
  ],
  "targetWorkerId": "worker id (redirect, optional)"
}
```"""


def get_self_review_prompt(
    title: str,
    description: str,
    acceptance_criteria: list[str],
    output: str,
    review_count: int,
    max_reviews: int,
) -> str:
    """Generate prompt for a worker reviewing its own output."""
    return f"""Review your own work on the task below before it is closed.

# Task: {title}

{description or "(no description)"}

## Acceptance Criteria
{_bullet_list(acceptance_criteria)}

## Your Latest Output
{output or "(empty)"}

{_review_round(review_count, max_reviews)}

Choose exactly one action:
- complete: every acceptance criterion is met
- rework: you can fix the gaps yourself; explain what to fix in "feedback"
- add_tasks: the remaining work is large enough to split into follow-up tasks
- redirect: another worker is better placed to finish this

Respond with JSON:

{REVIEW_DECISION_SCHEMA}"""


def get_manager_review_prompt(
    title: str,
    description: str,
    acceptance_criteria: list[str],
    output: str,
    change_set: str,
    team_members: list[tuple[str, str]],
    review_count: int = 0,
    max_reviews: int = 3,
) -> str:
    """Generate prompt for a reviewer inspecting a change set on a manager's behalf."""
    members = _bullet_list([f"{name} ({worker_id})" for worker_id, name in team_members])
    return f"""You are reviewing a teammate's delivered task for your manager.

# Task: {title}

{description or "(no description)"}

## Acceptance Criteria
{_bullet_list(acceptance_criteria)}

## Worker Report
{output or "(empty)"}

## Change Set
{change_set or "(no changes recorded)"}

## Team Members
{members}

{_review_round(review_count, max_reviews)}

Recommend exactly one action: complete, rework, add_tasks or redirect.

Respond with JSON:

{REVIEW_DECISION_SCHEMA}"""


def get_team_planning_prompt(
    team_name: str,
    epic_title: str,
    epic_description: str,
    members: list[tuple[str, list[str]]],
    max_tasks: int,
) -> str:
    """
    Generate prompt for a manager turning a team epic into concrete tasks.

    Args:
        team_name: Team name
        epic_title: Epic title
        epic_description: Aggregated work items of the epic
        members: (worker name, skills) of each team member
        max_tasks: Maximum number of tasks to return

    Returns:
        Formatted prompt
    """
    member_lines = _bullet_list(
        [f"{name}: {', '.join(skills) if skills else 'generalist'}" for name, skills in members]
    )

    return f"""You manage the {team_name} team. Plan the following work for your team.

# {epic_title}

{epic_description}

## Team Members
{member_lines}

## Guidelines

1. Return at most {max_tasks} tasks
2. List the exact files each task will create or modify in "affectedFiles";
   two tasks touching the same file cannot run at the same time
3. Reference dependencies by the exact title of another task in this plan
4. Optionally name the team member best suited in "assignee"
5. type is one of implementation, testing, documentation, bug_fix, research

## Output Format

```json
{{
  "tasks": [
    {{
      "title": "Task title",
      "description": "What needs to be done",
      "type": "implementation",
      "priority": "P2",
      "affectedFiles": ["src/module.py"],
      "dependencies": [],
      "acceptanceCriteria": ["Criterion"],
      "requiredSkills": [],
      "estimatedHours": 3,
      "assignee": "Worker name"
    }}
  ]
}}
```

Return ONLY the JSON object, no additional text."""
