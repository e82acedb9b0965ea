from hearth.tool_rules import RULE_SETS, ToolRule, ToolRuleEngine, rule_set


def test_max_count_reaches_limit_and_reset_clears_it():
    engine = ToolRuleEngine(rules=[ToolRule.max_count("file", 3)])
    for _ in range(3):
        assert engine.check("file").allowed is True
        engine.record("file")

    assert engine.is_at_limit("file") is True
    check = engine.check("file")
    assert check.allowed is False
    assert check.code == "limit_reached"

    engine.reset()

    assert engine.is_at_limit("file") is False
    assert engine.check("file").allowed is True


def test_terminal_rule_is_cancelled_by_continue_after():
    engine = ToolRuleEngine(rules=[ToolRule.terminal("response"), ToolRule.terminal("file")])
    assert engine.should_terminate("response") is True
    assert engine.should_terminate("file") is True
    assert engine.should_terminate("core_memory_read") is False

    engine.rules.append(ToolRule.continue_after("file"))
    assert engine.should_terminate("file") is False


def test_child_rule_suggests_next_tools():
    engine = ToolRuleEngine.from_rule_set("coder")
    assert engine.required_next_tools("file") == ["file", "response"]
    assert engine.required_next_tools("response") == []


def test_initial_rule_only_applies_to_first_call():
    engine = ToolRuleEngine(rules=[ToolRule.initial("core_memory_read")])
    rejected = engine.check("file")
    assert rejected.allowed is False
    assert rejected.code == "rule_violation"

    engine.record("core_memory_read")
    assert engine.check("file").allowed is True


def test_restore_reloads_counts_from_checkpoint():
    engine = ToolRuleEngine(rules=[ToolRule.max_count("file", 2)])
    engine.restore({"file": 2})
    assert engine.is_at_limit("file") is True
    assert engine.total_calls == 2


def test_named_rule_sets_end_on_response():
    for name in ("general", "research", "coder"):
        engine = ToolRuleEngine.from_rule_set(name)
        assert engine.should_terminate("response") is True
    assert rule_set("unknown") == RULE_SETS["general"]


def test_describe_renders_rule_section():
    text = ToolRuleEngine.from_rule_set("research").describe()
    assert text.startswith("## Tool Rules")
    assert "- `call_subordinate` may be called at most 6 times." in text
    assert ToolRuleEngine().describe() == ""
