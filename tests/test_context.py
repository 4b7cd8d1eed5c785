"""Tests for context.py: token budgeting, truncation, system prompt assembly."""

import pytest

from context import (
    CONVERSATION_OVERHEAD,
    MESSAGE_OVERHEAD,
    ContextBudgeter,
    ContextConfig,
    build_system_prompt,
    load_agents_instructions,
)


def word_count(text):
    return len(text.split())


def _msg(role, words):
    return {"role": role, "content": " ".join(["w"] * words)}


@pytest.fixture
def b():
    return ContextBudgeter(count_tokens=word_count)


# ─── Costs ───────────────────────────────────────────────────────

class TestCosts:
    def test_message_cost_includes_role_prefix_and_overhead(self, b):
        # "user: w w" → 3 words
        assert b.message_cost(_msg("user", 2)) == 3 + MESSAGE_OVERHEAD

    def test_system_message_has_no_prefix(self, b):
        assert b.message_cost(_msg("system", 2)) == 2 + MESSAGE_OVERHEAD

    def test_total_cost_adds_conversation_overhead(self, b):
        msgs = [_msg("user", 1), _msg("assistant", 1)]
        assert b.total_cost(msgs) == 2 * (2 + MESSAGE_OVERHEAD) + CONVERSATION_OVERHEAD

    def test_empty_conversation_costs_overhead_only(self, b):
        assert b.total_cost([]) == CONVERSATION_OVERHEAD


# ─── Status ──────────────────────────────────────────────────────

class TestCheckStatus:
    def test_usage_fraction(self, b):
        cfg = ContextConfig(max_tokens=100, guard_threshold=0.8)
        status = b.check_status([_msg("user", 9)], "", cfg)
        # 10 (prefix + words) + 4 + 3
        assert status.current_tokens == 17
        assert status.max_tokens == 100
        assert status.usage_percent == pytest.approx(0.17)
        assert status.needs_truncation is False

    def test_empty_conversation_near_zero(self, b):
        status = b.check_status([], "", ContextConfig(max_tokens=128000, guard_threshold=0.8))
        assert status.usage_percent < 0.001
        assert status.needs_truncation is False

    def test_system_prompt_counted(self, b):
        cfg = ContextConfig(max_tokens=100, guard_threshold=0.8)
        without = b.check_status([], "", cfg).current_tokens
        with_prompt = b.check_status([], "one two three", cfg).current_tokens
        assert with_prompt - without == 3

    def test_threshold_is_strict(self, b):
        cfg = ContextConfig(max_tokens=100, guard_threshold=0.2)
        # threshold is 20 tokens; 13 words cost 14 + 4 + 3 = 21
        assert b.check_status([_msg("user", 13)], "", cfg).needs_truncation is True
        # 12 words land exactly on the threshold
        assert b.check_status([_msg("user", 12)], "", cfg).needs_truncation is False

    def test_exceeds_window(self, b):
        cfg = ContextConfig(max_tokens=10, guard_threshold=1.0)
        status = b.check_status([_msg("user", 50)], "", cfg)
        assert status.usage_percent > 1.0
        assert status.needs_truncation is True

    def test_usage_strictly_increases_with_more_messages(self, b):
        cfg = ContextConfig(max_tokens=1000, guard_threshold=0.8)
        msgs = []
        usages = [b.check_status(msgs, "prompt", cfg).usage_percent]
        for i in range(6):
            msgs.append(_msg("user" if i % 2 == 0 else "assistant", 1 + i))
            usages.append(b.check_status(msgs, "prompt", cfg).usage_percent)
        assert all(prev < cur for prev, cur in zip(usages, usages[1:]))

    def test_usage_strictly_increases_with_longer_messages(self, b):
        cfg = ContextConfig(max_tokens=1000, guard_threshold=0.8)
        usages = [
            b.check_status([_msg("user", 1), _msg("assistant", words)], "", cfg).usage_percent
            for words in (0, 1, 5, 20, 100)
        ]
        assert all(prev < cur for prev, cur in zip(usages, usages[1:]))


# ─── Truncation ──────────────────────────────────────────────────

class TestTruncate:
    def test_all_fit(self, b):
        msgs = [_msg("user", 1), _msg("assistant", 1)]
        assert b.truncate(msgs, 1000) == msgs

    def test_keeps_most_recent_suffix(self, b):
        msgs = [_msg("user", 10), _msg("assistant", 1), _msg("user", 1)]
        # each short message costs 2 + 4 = 6
        kept = b.truncate(msgs, 12)
        assert kept == msgs[1:]

    def test_stops_at_first_overflow(self, b):
        # Old small message must not be kept once a larger one in between overflows
        msgs = [_msg("user", 1), _msg("assistant", 50), _msg("user", 1)]
        assert b.truncate(msgs, 20) == [msgs[2]]

    def test_empty_when_newest_too_large(self, b):
        msgs = [_msg("user", 1), _msg("user", 100)]
        assert b.truncate(msgs, 10) == []

    def test_empty_input(self, b):
        assert b.truncate([], 10) == []

    def test_result_within_budget(self, b):
        msgs = [_msg("user", n % 7 + 1) for n in range(40)]
        kept = b.truncate(msgs, 50)
        assert sum(b.message_cost(m) for m in kept) <= 50
        assert kept == msgs[len(msgs) - len(kept):]

    def test_does_not_mutate_input(self, b):
        msgs = [_msg("user", 30), _msg("user", 1)]
        original = list(msgs)
        b.truncate(msgs, 6)
        assert msgs == original


class TestFit:
    def test_effective_budget(self):
        cfg = ContextConfig(max_tokens=128000, guard_threshold=0.8)
        assert ContextBudgeter.effective_budget(cfg) == 81920

    def test_effective_budget_floors(self):
        cfg = ContextConfig(max_tokens=101, guard_threshold=0.5)
        assert ContextBudgeter.effective_budget(cfg) == 40

    def test_under_threshold_untouched(self, b):
        msgs = [_msg("user", 3)]
        kept, status = b.fit(msgs, "", ContextConfig(max_tokens=1000, guard_threshold=0.8))
        assert kept is msgs
        assert status.needs_truncation is False

    def test_over_threshold_truncates_to_effective_budget(self, b):
        cfg = ContextConfig(max_tokens=100, guard_threshold=0.5)
        msgs = [_msg("user", 20), _msg("assistant", 20), _msg("user", 5)]
        kept, status = b.fit(msgs, "", cfg)
        assert status.needs_truncation is True
        assert kept == msgs[1:]
        assert sum(b.message_cost(m) for m in kept) <= ContextBudgeter.effective_budget(cfg)


# ─── System Prompt ───────────────────────────────────────────────

class TestSystemPrompt:
    def test_base_prompt_without_agents_file(self, workspace):
        assert build_system_prompt(workspace, "Be brief.") == "Be brief."

    def test_agents_file_prepended(self, workspace):
        workspace.agents_file.write_text("# Rules\nBe kind.")
        prompt = build_system_prompt(workspace, "Be brief.")
        assert prompt == "# Rules\nBe kind.\n\n---\n\nBe brief."

    def test_agents_file_capped(self, workspace):
        workspace.agents_file.write_text("x" * 50)
        text = load_agents_instructions(workspace, max_chars=10)
        assert text == "x" * 10 + "\n\n[Content truncated]"

    def test_agents_file_reread_each_build(self, workspace):
        workspace.agents_file.write_text("v1")
        assert build_system_prompt(workspace, "base").startswith("v1")
        workspace.agents_file.write_text("v2")
        assert build_system_prompt(workspace, "base").startswith("v2")
