from strata.PARSERS.ignore_parser import IgnoreRules


def test_simple_patterns():
    rules = IgnoreRules.from_string("node_modules\n*.log\n# comment\n\n")
    assert rules.matches("node_modules")
    assert rules.matches("node_modules/express/index.js")
    assert rules.matches("debug.log")
    assert not rules.matches("logs/debug.log")
    assert not rules.matches("app.js")


def test_negation_later_rule_wins():
    rules = IgnoreRules.from_string("*.md\n!README.md\n")
    assert rules.matches("CHANGELOG.md")
    assert not rules.matches("README.md")


def test_double_star_matches_any_depth():
    rules = IgnoreRules.from_string("**/*.pyc\n")
    assert rules.matches("a.pyc")
    assert rules.matches("pkg/sub/a.pyc")
    assert not rules.matches("pkg/a.py")


def test_leading_slash_is_context_root():
    rules = IgnoreRules.from_string("/build\n")
    assert rules.matches("build/out.bin")
    assert not rules.matches("src/build")


def test_empty_rules(tmp_path):
    path = tmp_path / ".dockerignore"
    path.write_text("")
    rules = IgnoreRules.from_file(str(path))
    assert not rules
    assert not rules.matches("anything")
