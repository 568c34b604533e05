"""Managed prompt templates and prompt A/B tests."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from .assignment import AssignmentEngine
from .context import ContextStore, PromptLink, default_store
from .errors import AssignmentFailure, PromptNotFoundError
from .snapshots import SnapshotCache, load_prompt_ab_tests

_LOGGER = logging.getLogger(__name__)

_VARIABLE_PATTERN = re.compile(r"\{\{(\s*\w+\s*)\}\}")


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def render_template(template: str, variables: Optional[Mapping[str, Any]] = None) -> str:
    """Replace ``{{ name }}`` placeholders; unknown names are left as written."""

    if not variables:
        return template

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1).strip()
        if key in variables:
            return _stringify(variables[key])
        return match.group(0)

    return _VARIABLE_PATTERN.sub(_replace, template)


@dataclass(frozen=True, slots=True)
class PromptTemplate:
    key: str
    version: int
    system: str = ""
    user: str = ""


@dataclass(frozen=True, slots=True)
class PromptResult:
    """A rendered prompt, with A/B provenance when it came from a test."""

    key: str
    version: int
    system: str
    user: str
    ab_test_key: Optional[str] = None
    variant_index: Optional[int] = None


class PromptCatalog:
    """Prompt templates by key and version, refreshed by whole-map swaps."""

    def __init__(self, templates: Iterable[PromptTemplate] = ()) -> None:
        self._templates: Mapping[Tuple[str, int], PromptTemplate] = MappingProxyType({})
        self._latest: Mapping[str, int] = MappingProxyType({})
        self.replace(templates)

    def replace(self, templates: Iterable[PromptTemplate]) -> None:
        by_version: Dict[Tuple[str, int], PromptTemplate] = {}
        latest: Dict[str, int] = {}
        for template in templates:
            by_version[(template.key, template.version)] = template
            latest[template.key] = max(latest.get(template.key, template.version), template.version)
        # publish the maps together as one generation
        self._templates, self._latest = MappingProxyType(by_version), MappingProxyType(latest)

    def lookup(self, key: str, version: Optional[int] = None) -> Optional[PromptTemplate]:
        templates, latest = self._templates, self._latest
        if version is None:
            if key not in latest:
                return None
            version = latest[key]
        return templates.get((key, version))


def load_prompt_templates(payload: Mapping[str, Any]) -> list[PromptTemplate]:
    """Parse the ``prompts`` section of a prompts response."""

    templates = []
    for entry in payload.get("prompts") or []:
        if not isinstance(entry, Mapping):
            _LOGGER.warning("Skipping malformed prompt entry", extra={"entry_type": type(entry).__name__})
            continue
        key = entry.get("key")
        version = entry.get("version")
        if not key or not isinstance(key, str) or isinstance(version, bool) or not isinstance(version, int):
            _LOGGER.warning("Skipping prompt entry without key/version", extra={"prompt_key": key})
            continue
        templates.append(
            PromptTemplate(
                key=key,
                version=version,
                system=entry.get("system_prompt") or "",
                user=entry.get("user_template") or "",
            )
        )
    return templates


class PromptManager:
    """Renders cached prompts and links the choice to the next recorded span."""

    def __init__(
        self,
        *,
        catalog: Optional[PromptCatalog] = None,
        ab_tests: Optional[SnapshotCache] = None,
        store: Optional[ContextStore] = None,
        timeout: float = 1.5,
    ) -> None:
        self.catalog = catalog or PromptCatalog()
        self.ab_tests = ab_tests or SnapshotCache()
        self._store = store or default_store
        self._engine = AssignmentEngine(self.ab_tests, timeout=timeout)

    def load(self, payload: Mapping[str, Any]) -> None:
        """Replace templates and A/B tests from one prompts response."""

        self.catalog.replace(load_prompt_templates(payload))
        self.ab_tests.replace(load_prompt_ab_tests(payload))

    def get(
        self,
        key: str,
        *,
        variables: Optional[Mapping[str, Any]] = None,
        version: Optional[int] = None,
    ) -> PromptResult:
        template = self.catalog.lookup(key, version)
        if template is None:
            raise PromptNotFoundError(f"Prompt '{key}' not found" + (f" (version {version})" if version else ""))
        self._store.set_prompt_link(PromptLink(prompt_key=template.key, prompt_version=template.version))
        return PromptResult(
            key=template.key,
            version=template.version,
            system=render_template(template.system, variables),
            user=render_template(template.user, variables),
        )

    async def get_ab(
        self,
        ab_test_key: str,
        session_id: str,
        *,
        variables: Optional[Mapping[str, Any]] = None,
        version: Optional[int] = None,
        fallback_key: Optional[str] = None,
    ) -> PromptResult:
        """Pick the prompt variant for ``session_id`` and render it.

        When the test cannot be resolved, ``fallback_key`` (if given) is
        rendered instead; otherwise :class:`PromptNotFoundError` is raised.
        """

        try:
            assignment = await self._engine.resolve(ab_test_key, session_id, version=version)
        except AssignmentFailure as exc:
            if fallback_key is None:
                raise PromptNotFoundError(f"Prompt A/B test '{ab_test_key}' not available: {exc.kind.value}") from exc
            _LOGGER.warning("Using fallback prompt for %s", ab_test_key, extra={"reason": exc.kind.value})
            return self.get(fallback_key, variables=variables)

        prompt_key, prompt_version = assignment.payload
        template = self.catalog.lookup(prompt_key, prompt_version)
        if template is None:
            raise PromptNotFoundError(f"Prompt '{prompt_key}' referenced by '{ab_test_key}' not found")
        self._store.set_prompt_link(
            PromptLink(
                prompt_key=template.key,
                prompt_version=template.version,
                ab_test_key=ab_test_key,
                variant_index=assignment.variant_index,
            )
        )
        return PromptResult(
            key=template.key,
            version=template.version,
            system=render_template(template.system, variables),
            user=render_template(template.user, variables),
            ab_test_key=ab_test_key,
            variant_index=assignment.variant_index,
        )


__all__ = [
    "PromptCatalog",
    "PromptManager",
    "PromptResult",
    "PromptTemplate",
    "load_prompt_templates",
    "render_template",
]
