"""Planning-side injection of frequently seen review rules.

Rules that keep recurring across projects are turned into a "Lessons from
Past Reviews" section appended to planning prompts, filtered down to the ones
that apply to the developer's technology stack.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .models import SEVERITY_ORDER, ReviewRule, severity_rank

DEFAULT_OUTCOME_THRESHOLD = 3
MAX_RULES_IN_SECTION = 12

# Developer profile fields that name a technology choice.
STACK_PROFILE_FIELDS: tuple[str, ...] = (
    "frontend_framework",
    "backend_framework",
    "database",
    "cloud_provider",
    "styling",
    "state_management",
    "analytics",
    "ci_cd",
    "package_manager",
    "test_runner",
    "linter",
    "project_structure",
    "error_tracker",
)

# A rule mentioning none of these is generic and applies to every stack.
TECH_TERMS: tuple[str, ...] = (
    "react", "next", "vue", "nuxt", "svelte", "angular", "remix", "astro",
    "express", "fastify", "hono", "nest", "koa",
    "postgres", "postgresql", "mysql", "sqlite", "mongodb", "redis", "supabase", "drizzle", "prisma",
    "vercel", "aws", "gcp", "azure", "docker", "kubernetes", "lambda", "cloudflare",
    "typescript", "javascript", "python", "golang", "rust",
    "tailwind", "css-modules", "styled-components",
    "zustand", "redux", "jotai", "pinia",
    "vitest", "jest", "playwright", "cypress",
    "graphql", "trpc", "webpack", "vite", "turbopack", "serverless",
)  # fmt: skip


def extract_stack_keywords(profile: Mapping[str, Any]) -> list[str]:
    """Lowercased technology names from a developer profile, ignoring blanks and ``"none"``."""
    languages = profile.get("languages")
    raw: list[Any] = list(languages) if isinstance(languages, (list, tuple)) else []
    raw.extend(profile.get(field) for field in STACK_PROFILE_FIELDS)
    keywords = (value.lower().strip() for value in raw if isinstance(value, str))
    return [keyword for keyword in keywords if keyword and keyword != "none"]


def is_generic_rule(description: str) -> bool:
    lowered = description.lower()
    return not any(term in lowered for term in TECH_TERMS)


def is_stack_relevant(rule: ReviewRule, stack_keywords: list[str]) -> bool:
    """A rule applies when it mentions one of the stack keywords or no technology at all."""
    lowered = rule.description.lower()
    if any(keyword in lowered for keyword in stack_keywords):
        return True
    return is_generic_rule(lowered)


def get_relevant_rules(
    rules: list[ReviewRule],
    stack_keywords: list[str],
    threshold: int = DEFAULT_OUTCOME_THRESHOLD,
) -> list[ReviewRule]:
    """Rules seen at least ``threshold`` times that fit the stack, most frequent first."""
    relevant = [rule for rule in rules if rule.times_seen >= threshold and is_stack_relevant(rule, stack_keywords)]
    return sorted(relevant, key=lambda rule: (-rule.times_seen, severity_rank(rule.severity)))


def build_outcome_section(rules: list[ReviewRule], phase: str) -> str:
    if not rules:
        return ""

    grouped: dict[str, list[ReviewRule]] = {}
    for rule in rules[:MAX_RULES_IN_SECTION]:
        grouped.setdefault(rule.severity.value, []).append(rule)

    lines = [
        "",
        f"## Lessons from Past Reviews ({phase})",
        "",
        "The following issues have been found repeatedly in past project reviews.",
        "Proactively address these patterns in your output:",
        "",
    ]
    for severity in SEVERITY_ORDER:
        group = grouped.get(severity.value)
        if not group:
            continue
        lines.append(f"### {severity.value.capitalize()} Issues")
        lines.append("")
        for rule in group:
            projects = len(rule.projects)
            lines.append(
                f"- **{rule.description}** (seen {rule.times_seen} times across "
                f"{projects} project{'' if projects == 1 else 's'})"
            )
        lines.append("")
    return "\n".join(lines)


def augment_prompt(
    base_prompt: str,
    rules: list[ReviewRule],
    phase: str,
    profile: Mapping[str, Any],
    threshold: int = DEFAULT_OUTCOME_THRESHOLD,
) -> str:
    """Append the lessons section to ``base_prompt``; unchanged when no rule qualifies."""
    relevant = get_relevant_rules(rules, extract_stack_keywords(profile), threshold)
    section = build_outcome_section(relevant, phase)
    if not section:
        return base_prompt
    return f"{base_prompt}\n{section}"
