from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any

from maestro.models import Orchestration, Phase, PlanTask, Question, QuestionKind

QUESTIONS_PROMPT = """You are an expert requirements analyst. The user wants to build:

"{goal}"

Generate 3-5 clarifying questions to understand their requirements better.
Focus on:
1. Technical preferences (frameworks, languages, architecture)
2. Scope clarification (what features are essential vs nice-to-have)
3. Constraints (timeline expectations, existing code to integrate with)
4. Quality requirements (testing, accessibility, security needs)

Output ONLY a JSON array of questions, each with:
- "id": unique string (e.g., "q1", "q2")
- "text": the question text
- "kind": "choice", "multiselect", or "text"
- "options": array of 2-5 common answers (empty for "text")
"""

FOLLOW_UP_PROMPT = """You are a senior requirements analyst. Think carefully before asking more questions.

PROJECT GOAL:
"{goal}"

QUESTIONS ALREADY ASKED:
{asked}

USER'S ANSWERS SO FAR:
{answers}
{plan}
If the answers are comprehensive enough to proceed, respond with:
{{"sufficient": true, "reason": "Brief explanation of why no more questions are needed"}}

Otherwise output 1-3 NEW questions that do not rephrase the ones above, as a JSON array:
[{{"id": "deep-1", "text": "...", "kind": "choice|multiselect|text", "options": ["..."]}}]
"""

PLAN_PROMPT = """You are an expert software architect. Create an implementation plan for:

GOAL: "{goal}"

USER REQUIREMENTS:
{requirements}

Break the work into tasks. Each task should be specific, actionable, assignable to one
specialist agent type (backend, frontend, devops, qa, docs) and small enough for one session.

Output ONLY a JSON array of tasks:
[{{"id": "task-1", "title": "...", "description": "...", "agent_type": "backend", "dependencies": [], "priority": "P1"}}]
Dependencies must reference ids of earlier tasks in the same array.
"""

REFINE_PROMPT = """Based on user feedback, create additional tasks.

ORIGINAL GOAL: {goal}
COMPLETED TASKS: {completed}

USER FEEDBACK:
{feedback}

Create 1-5 new tasks to address this feedback. Output ONLY a JSON array:
[{{"id": "refine-1", "title": "...", "description": "...", "agent_type": "...", "dependencies": [], "priority": "P1"}}]
"""

TASK_PROMPT = """You are a {agent_type} specialist working on a larger project.

PROJECT GOAL: {goal}

YOUR TASK: {title}
{description}

REQUIREMENTS FROM USER:
{requirements}

Instructions:
1. Complete this specific task thoroughly
2. Test your work by running relevant tests or verifying manually
3. Commit your changes with a clear message
4. Report what you accomplished

Focus only on this task. Other tasks are being handled by other specialists.
You are working in an isolated git worktree. Your changes will be reviewed before merging."""

CHAT_PROMPT = """You are an orchestration assistant helping with: "{goal}"

Current phase: {phase}
{context}
User message: "{message}"

Respond helpfully and in a structured way. Use bullet points or numbered lists when listing
multiple items. If they are asking for clarification, explain with specific details. If they
are requesting changes, acknowledge them and suggest how to proceed.
Keep responses concise but complete (3-5 sentences)."""

TASK_CHAT_PROMPT = """You are an orchestration assistant helping refine a software development plan.

OVERALL PROJECT GOAL: "{goal}"

USER REQUIREMENTS:
{requirements}

CURRENT PLAN:
{plan}

SPECIFIC TASK BEING DISCUSSED:
- ID: {task_id}
- Title: {title}
- Description: {description}
- Agent Type: {agent_type}
- Dependencies: {dependencies}

USER'S QUESTION OR FEEDBACK ABOUT THIS TASK:
"{message}"

If they want changes, suggest how to modify the task. If they need clarification, explain the
technical approach. Keep the response focused (2-4 sentences)."""

EXPLAIN_PROMPT = """You are explaining your planning process. The user wants to build:
"{goal}"

Current phase: {phase}
{plan}
Explain your reasoning:
1. Why you chose this approach
2. Key technical decisions made
3. Potential alternatives considered
4. What you need more clarity on

Keep it conversational and concise (3-5 sentences)."""


def _answer_text(value: str | list[str]) -> str:
    if isinstance(value, list):
        return ", ".join(value)
    return value


def format_requirements(orchestration: Orchestration) -> str:
    lines: list[str] = []
    by_id = {question.id: question for question in orchestration.questions}
    for question_id, value in orchestration.answers.items():
        question = by_id.get(question_id)
        label = question.text if question else question_id
        lines.append(f"Q: {label}\nA: {_answer_text(value)}")
    return "\n\n".join(lines) if lines else "(no answers provided)"


def build_questions_prompt(goal: str) -> str:
    return QUESTIONS_PROMPT.format(goal=goal)


def build_follow_up_prompt(orchestration: Orchestration) -> str:
    asked = "\n".join(f"- {question.text}" for question in orchestration.questions) or "- (none)"
    plan = ""
    if orchestration.plan:
        plan = "\nCURRENT PLAN:\n" + "\n".join(
            f"{index}. {task.title}: {task.description}"
            for index, task in enumerate(orchestration.plan, start=1)
        ) + "\n"
    return FOLLOW_UP_PROMPT.format(
        goal=orchestration.goal,
        asked=asked,
        answers=json.dumps(orchestration.answers, ensure_ascii=False, indent=2),
        plan=plan,
    )


def build_plan_prompt(orchestration: Orchestration) -> str:
    return PLAN_PROMPT.format(
        goal=orchestration.goal,
        requirements=format_requirements(orchestration),
    )


def build_refine_prompt(orchestration: Orchestration, feedback: str) -> str:
    return REFINE_PROMPT.format(
        goal=orchestration.goal,
        completed=", ".join(task.title for task in orchestration.plan) or "(none)",
        feedback=feedback,
    )


def _numbered_plan(orchestration: Orchestration, *, marked: str | None = None) -> str:
    lines = []
    for index, task in enumerate(orchestration.plan, start=1):
        marker = "  <- discussing this task" if task.id == marked else ""
        lines.append(f"{index}. [{task.id}] {task.title}{marker}")
    return "\n".join(lines)


def build_chat_prompt(orchestration: Orchestration, message: str) -> str:
    context = ""
    if orchestration.answers:
        context += "\nUser's answers so far:\n" + json.dumps(
            orchestration.answers, ensure_ascii=False, indent=2
        ) + "\n"
    if orchestration.plan:
        context += "\nCurrent plan:\n" + _numbered_plan(orchestration) + "\n"
    if orchestration.phase == Phase.EXECUTION:
        context += (
            "\nExecution is in progress. Help the user understand progress or answer"
            " questions about the work being done.\n"
        )
    return CHAT_PROMPT.format(
        goal=orchestration.goal,
        phase=orchestration.phase.value,
        context=context,
        message=message,
    )


def build_task_chat_prompt(orchestration: Orchestration, task: PlanTask, message: str) -> str:
    return TASK_CHAT_PROMPT.format(
        goal=orchestration.goal,
        requirements=format_requirements(orchestration),
        plan=_numbered_plan(orchestration, marked=task.id),
        task_id=task.id,
        title=task.title,
        description=task.description or "No description yet",
        agent_type=task.agent_type or "Not specified",
        dependencies=", ".join(task.dependencies) or "None",
        message=message,
    )


def build_explain_prompt(orchestration: Orchestration) -> str:
    plan = ""
    if orchestration.plan:
        plan = "Current plan:\n" + "\n".join(
            f"- {task.title}: {task.description}" for task in orchestration.plan
        ) + "\n"
    return EXPLAIN_PROMPT.format(
        goal=orchestration.goal,
        phase=orchestration.phase.value,
        plan=plan,
    )


def build_task_prompt(orchestration: Orchestration, task: PlanTask) -> str:
    requirements = "\n".join(
        f"- {_answer_text(value)}" for value in orchestration.answers.values()
    )
    return TASK_PROMPT.format(
        agent_type=task.agent_type,
        goal=orchestration.goal,
        title=task.title,
        description=task.description,
        requirements=requirements or "- (none)",
    )


def _package_json_dependencies(project_root: Path) -> set[str]:
    path = project_root / "package.json"
    if not path.exists():
        return set()
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return set()
    names: set[str] = set()
    for section in ("dependencies", "devDependencies"):
        values = payload.get(section)
        if isinstance(values, dict):
            names.update(str(name) for name in values)
    return names


def _pyproject_dependencies(project_root: Path) -> list[str]:
    path = project_root / "pyproject.toml"
    if not path.exists():
        return []
    try:
        payload = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError):
        return []
    project = payload.get("project")
    if not isinstance(project, dict):
        return []
    raw = project.get("dependencies") or []
    return [str(item) for item in raw if isinstance(item, str)]


_JS_MARKERS = [
    ("vue", "Vue"),
    ("react", "React"),
    ("svelte", "Svelte"),
    ("typescript", "TypeScript"),
    ("vite", "Vite"),
    ("tailwindcss", "Tailwind"),
    ("pinia", "Pinia"),
    ("@tauri-apps/api", "Tauri"),
    ("@supabase/supabase-js", "Supabase"),
    ("express", "Express"),
]


def detect_tech_stack(project_root: Path) -> list[str]:
    """Best-effort list of frameworks used by the project at ``project_root``."""
    stack: list[str] = []
    js_dependencies = _package_json_dependencies(project_root)
    for package_name, label in _JS_MARKERS:
        if package_name in js_dependencies:
            stack.append(label)
    python_dependencies = _pyproject_dependencies(project_root)
    if python_dependencies or (project_root / "pyproject.toml").exists():
        stack.append("Python")
        for requirement in python_dependencies:
            name = requirement.split(";")[0].strip()
            for separator in ("[", "=", ">", "<", "~", "!", " "):
                name = name.split(separator)[0]
            if name:
                stack.append(name)
    return stack


def fallback_questions(tech_stack: list[str] | None = None) -> list[Question]:
    stack_label = ", ".join(tech_stack) if tech_stack else "unknown"
    return [
        Question(
            id="q0",
            text=f"Detected tech stack: {stack_label}. Is this correct?",
            kind=QuestionKind.CHOICE,
            options=["Yes, use this stack", "No, let me specify"],
        ),
        Question(
            id="q1",
            text="What type of feature is this?",
            kind=QuestionKind.CHOICE,
            options=[
                "New feature",
                "Bug fix",
                "Refactoring",
                "Performance improvement",
                "UI/UX update",
            ],
        ),
        Question(
            id="q2",
            text="What is the scope of this work?",
            kind=QuestionKind.CHOICE,
            options=["Small (1-2 files)", "Medium (3-5 files)", "Large (6+ files)", "Not sure"],
        ),
        Question(
            id="q3",
            text="What are the essential features or requirements? (describe briefly)",
            kind=QuestionKind.TEXT,
        ),
        Question(
            id="q4",
            text="What quality and testing requirements apply?",
            kind=QuestionKind.MULTISELECT,
            options=[
                "Unit tests required",
                "E2E tests required",
                "Keep backwards compatible",
                "Performance critical",
                "Accessibility compliance",
            ],
        ),
    ]


_PWA_PLAN: list[dict[str, Any]] = [
    {
        "id": "task-1",
        "title": "Configure PWA manifest",
        "description": "Create the web app manifest with icons, theme colors and display mode.",
        "agent_type": "frontend",
        "dependencies": [],
        "priority": "P1",
    },
    {
        "id": "task-2",
        "title": "Implement service worker",
        "description": "Register a service worker with caching strategies for app assets.",
        "agent_type": "frontend",
        "dependencies": ["task-1"],
        "priority": "P1",
    },
    {
        "id": "task-3",
        "title": "Add install prompt",
        "description": "Handle the install prompt event and surface an install action.",
        "agent_type": "frontend",
        "dependencies": ["task-2"],
        "priority": "P2",
    },
    {
        "id": "task-4",
        "title": "Optimize for offline",
        "description": "Ensure core flows work offline and sync when connectivity returns.",
        "agent_type": "frontend",
        "dependencies": ["task-2"],
        "priority": "P2",
    },
    {
        "id": "task-5",
        "title": "Test PWA functionality",
        "description": "Verify installability, offline behaviour and the update flow.",
        "agent_type": "qa",
        "dependencies": ["task-3", "task-4"],
        "priority": "P2",
    },
]

_GENERIC_PLAN: list[dict[str, Any]] = [
    {
        "id": "task-1",
        "title": "Research & Design",
        "description": "Analyze requirements and design the approach for: {goal}",
        "agent_type": "backend",
        "dependencies": [],
        "priority": "P1",
    },
    {
        "id": "task-2",
        "title": "Implement core feature",
        "description": "Build the main functionality.",
        "agent_type": "backend",
        "dependencies": ["task-1"],
        "priority": "P1",
    },
    {
        "id": "task-3",
        "title": "Add UI components",
        "description": "Create the user interface pieces for the feature.",
        "agent_type": "frontend",
        "dependencies": ["task-2"],
        "priority": "P2",
    },
    {
        "id": "task-4",
        "title": "Integration & Testing",
        "description": "Wire components together and add tests.",
        "agent_type": "qa",
        "dependencies": ["task-3"],
        "priority": "P2",
    },
    {
        "id": "task-5",
        "title": "Documentation",
        "description": "Document the feature and its usage.",
        "agent_type": "docs",
        "dependencies": ["task-4"],
        "priority": "P3",
    },
]


def fallback_plan(goal: str) -> list[PlanTask]:
    lowered = goal.lower()
    template = _PWA_PLAN if "pwa" in lowered or "progressive" in lowered else _GENERIC_PLAN
    tasks: list[PlanTask] = []
    for item in template:
        task = PlanTask.from_dict(item)
        task.description = task.description.format(goal=goal)
        tasks.append(task)
    return tasks


def fallback_refinement(feedback: str) -> list[PlanTask]:
    title = feedback.strip().splitlines()[0][:80] if feedback.strip() else "Address feedback"
    return [
        PlanTask(
            id="refine-1",
            title=title,
            description=feedback.strip(),
            agent_type="general",
            dependencies=[],
            priority="P1",
        )
    ]
