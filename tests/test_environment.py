"""Tests for shellquest.environment module."""

import pytest

from shellquest.environment import ShellEnvironment, VariableError


@pytest.fixture
def env():
    return ShellEnvironment("student", "/home/student", extra={"MISSION": "unit"})


class TestVariables:
    """Tests for setting, reading and exporting variables."""

    def test_defaults(self, env):
        """USER, HOME and PWD are set and exported."""
        assert env.get("USER") == "student"
        assert env.get("HOME") == "/home/student"
        assert env.get("PWD") == "/home/student"
        assert env.is_exported("PATH")

    def test_extra_variables_exported(self, env):
        """Adventure variables start out exported."""
        assert env.exported()["MISSION"] == "unit"

    def test_set_without_export(self, env):
        """Plain assignments stay local."""
        env.set("LOCAL", "1")
        assert env.get("LOCAL") == "1"
        assert not env.is_exported("LOCAL")

    def test_readonly(self, env):
        """Read-only variables cannot be changed or removed."""
        with pytest.raises(VariableError):
            env.set("USER", "root")
        with pytest.raises(VariableError):
            env.unset("HOME")

    def test_invalid_name(self, env):
        """Names must be identifiers."""
        with pytest.raises(VariableError, match="not a valid identifier"):
            env.set("1BAD", "x")

    def test_update_pwd_tracks_oldpwd(self, env):
        """Changing directory records the previous one."""
        env.update_pwd("/tmp")
        assert env.get("PWD") == "/tmp"
        assert env.get("OLDPWD") == "/home/student"


class TestExpand:
    """Tests for $VAR expansion."""

    def test_simple_and_braced(self, env):
        """$NAME and ${NAME} both expand."""
        assert env.expand("echo $USER ${HOME}/x") == "echo student /home/student/x"

    def test_unknown_is_empty(self, env):
        """Unknown variables expand to nothing."""
        assert env.expand("echo [$NOPE]") == "echo []"

    def test_last_status(self, env):
        """$? is the previous exit code."""
        env.last_status = 127
        assert env.expand("echo $?") == "echo 127"

    def test_single_quotes_are_literal(self, env):
        """Nothing expands inside single quotes."""
        assert env.expand("echo '$USER' $USER") == "echo '$USER' student"

    def test_apostrophe_inside_double_quotes(self, env):
        """A quote character inside double quotes does not start a literal span."""
        assert env.expand("echo \"don't\" $HOME 'x'") == "echo \"don't\" /home/student 'x'"
        assert env.expand("echo \"it's $USER\"") == "echo \"it's student\""

    def test_escaped_dollar_is_literal(self, env):
        """A backslash keeps the reference from expanding."""
        assert env.expand("echo \\$USER $USER") == "echo \\$USER student"


class TestBuiltins:
    """Tests for env, export and unset."""

    def test_export_assignment(self, env):
        """export NAME=value sets and exports."""
        result = env.run_export(["AGENT=lighthouse"])
        assert result.ok
        assert env.exported()["AGENT"] == "lighthouse"

    def test_export_existing(self, env):
        """export NAME exports an existing local variable."""
        env.set("LOCAL", "1")
        env.run_export(["LOCAL"])
        assert env.is_exported("LOCAL")

    def test_export_listing(self, env):
        """export with no arguments lists declarations."""
        assert 'declare -x USER="student"' in env.run_export([]).stdout.split("\n")

    def test_export_invalid(self, env):
        """Bad identifiers are reported."""
        result = env.run_export(["9x=1"])
        assert result.exit_code == 1
        assert result.stderr == "export: `9x': not a valid identifier"

    def test_env_lists_exported_only(self, env):
        """env shows exported variables in NAME=value form."""
        env.set("LOCAL", "1")
        lines = env.run_env([]).stdout.split("\n")
        assert "USER=student" in lines
        assert "LOCAL=1" not in lines

    def test_env_single_name(self, env):
        """env NAME prints that variable or fails."""
        assert env.run_env(["USER"]).stdout == "USER=student"
        assert env.run_env(["NOPE"]).exit_code == 127

    def test_unset(self, env):
        """unset removes a variable."""
        env.run_export(["AGENT=x"])
        assert env.run_unset(["AGENT"]).ok
        assert env.get("AGENT") is None
        assert env.run_unset(["USER"]).stderr == "unset: USER: cannot unset: readonly variable"
