import asyncio

import pytest

from abtrace.context import ContextStore
from abtrace.errors import PromptNotFoundError
from abtrace.prompts import PromptCatalog, PromptManager, PromptTemplate, render_template

PROMPTS_RESPONSE = {
    "prompts": [
        {
            "key": "greeting",
            "version": 1,
            "system_prompt": "You are helpful.",
            "user_template": "Hello {{name}}!",
        },
        {
            "key": "greeting",
            "version": 2,
            "system_prompt": "You are concise.",
            "user_template": "Hi {{ name }}.",
        },
        {
            "key": "greeting-formal",
            "version": 1,
            "system_prompt": "You are formal.",
            "user_template": "Good day, {{name}}.",
        },
    ],
    "prompt_ab_tests": [
        {
            "key": "greeting-test",
            "version": 1,
            "variants": [
                {"prompt_key": "greeting", "prompt_version": 2, "weight": 70},
                {"prompt_key": "greeting-formal", "prompt_version": 1, "weight": 30},
            ],
        }
    ],
}


@pytest.mark.parametrize(
    ("template", "variables", "expected"),
    [
        ("Hello {{name}}!", {"name": "World"}, "Hello World!"),
        ("Hello {{ name }}!", {"name": "World"}, "Hello World!"),
        ("{{a}} and {{b}}", {"a": "x", "b": "y"}, "x and y"),
        ("Hello {{name}}, {{missing}}", {"name": "World"}, "Hello World, {{missing}}"),
        ("Count: {{n}}", {"n": 42}, "Count: 42"),
        ("Ratio: {{r}}", {"r": 2.0}, "Ratio: 2"),
        ("Flag: {{f}}", {"f": True}, "Flag: true"),
        ("Value: {{v}}", {"v": None}, "Value: null"),
        ("No variables here", {"unused": "x"}, "No variables here"),
        ("{{name}}", {}, "{{name}}"),
    ],
)
def test_render_template(template: str, variables, expected: str) -> None:
    assert render_template(template, variables) == expected


def test_catalog_lookup_latest_and_pinned() -> None:
    catalog = PromptCatalog(
        [
            PromptTemplate(key="k", version=1, user="v1"),
            PromptTemplate(key="k", version=3, user="v3"),
        ]
    )
    assert catalog.lookup("k").user == "v3"
    assert catalog.lookup("k", 1).user == "v1"
    assert catalog.lookup("k", 2) is None
    assert catalog.lookup("missing") is None


def test_get_renders_and_links_next_span(store: ContextStore) -> None:
    manager = PromptManager(store=store)
    manager.load(PROMPTS_RESPONSE)

    result = manager.get("greeting", variables={"name": "Ada"})
    assert (result.key, result.version) == ("greeting", 2)
    assert result.system == "You are concise."
    assert result.user == "Hi Ada."
    assert result.ab_test_key is None

    link = store.pop_prompt_link()
    assert (link.prompt_key, link.prompt_version) == ("greeting", 2)
    assert link.ab_test_key is None


def test_get_pinned_version(store: ContextStore) -> None:
    manager = PromptManager(store=store)
    manager.load(PROMPTS_RESPONSE)
    assert manager.get("greeting", version=1, variables={"name": "Ada"}).user == "Hello Ada!"


def test_get_unknown_prompt_raises(store: ContextStore) -> None:
    manager = PromptManager(store=store)
    manager.load(PROMPTS_RESPONSE)
    with pytest.raises(PromptNotFoundError):
        manager.get("unknown")
    with pytest.raises(PromptNotFoundError):
        manager.get("greeting", version=9)
    assert store.pop_prompt_link() is None


def test_get_ab_assigns_deterministically_and_links(store: ContextStore) -> None:
    async def _run() -> None:
        manager = PromptManager(store=store)
        manager.load(PROMPTS_RESPONSE)

        # bucket 146357 falls in the first 70%
        first = await manager.get_ab("greeting-test", "session-1", variables={"name": "Ada"})
        assert (first.key, first.version, first.variant_index) == ("greeting", 2, 0)
        assert first.user == "Hi Ada."
        assert first.ab_test_key == "greeting-test"

        link = store.pop_prompt_link()
        assert link.ab_test_key == "greeting-test"
        assert link.variant_index == 0

        # bucket 910222 falls in the last 30%
        second = await manager.get_ab("greeting-test", "user-123-convo-456", variables={"name": "Ada"})
        assert (second.key, second.variant_index) == ("greeting-formal", 1)
        assert second.user == "Good day, Ada."

        again = await manager.get_ab("greeting-test", "user-123-convo-456")
        assert again.key == second.key

    asyncio.run(_run())


def test_get_ab_unknown_test_uses_fallback_or_raises(store: ContextStore) -> None:
    async def _run() -> None:
        manager = PromptManager(store=store)
        manager.load(PROMPTS_RESPONSE)

        with pytest.raises(PromptNotFoundError):
            await manager.get_ab("missing-test", "session-1")

        result = await manager.get_ab("missing-test", "session-1", fallback_key="greeting", variables={"name": "Bo"})
        assert result.key == "greeting"
        assert result.user == "Hi Bo."
        assert result.ab_test_key is None
        assert store.pop_prompt_link().prompt_key == "greeting"

    asyncio.run(_run())


def test_reload_replaces_previous_generation(store: ContextStore) -> None:
    manager = PromptManager(store=store)
    manager.load(PROMPTS_RESPONSE)
    manager.load({"prompts": [{"key": "other", "version": 1, "user_template": "x"}]})
    assert manager.catalog.lookup("greeting") is None
    assert manager.ab_tests.lookup("greeting-test") is None
    assert manager.get("other").user == "x"


def test_malformed_prompt_entries_are_skipped(store: ContextStore) -> None:
    manager = PromptManager(store=store)
    manager.load(
        {
            "prompts": [
                "oops",
                {"key": "no-version", "user_template": "x"},
                {"key": "string-version", "version": "1", "user_template": "x"},
                {"key": "ok", "version": 1, "user_template": "fine"},
            ],
            "prompt_ab_tests": [
                {"key": "bad-test", "version": 1, "variants": ["greeting"]},
                42,
            ],
        }
    )
    assert manager.get("ok").user == "fine"
    assert manager.catalog.lookup("string-version") is None
    assert manager.ab_tests.keys() == ()
