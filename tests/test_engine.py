"""Tests for shellquest.engine module."""

import pytest

from shellquest.destructive import WarningLevel
from shellquest.engine import SUDO_FAILURE, TrainingSession, describe_event
from shellquest.interceptor import (
    Cancelled,
    ConfirmCommand,
    Confirmed,
    HeredocMode,
    NormalMode,
    OpenEditor,
    OpenPager,
    PasswordMode,
    Saved,
)
from shellquest.mission import AdventureCompleted, MissionCompleted, TaskCompleted


def sudo(session, line, password="hunter2"):
    prompt = session.submit(line)
    assert prompt.mask_input
    return session.submit(password)


class TestPromptAndBasics:
    """Tests for prompts and plain commands."""

    def test_initial_prompt(self, session):
        """The prompt shows user, host and ~ for home."""
        assert session.prompt == "student@lab:~$ "
        assert session.context.current_path == "/home/student"

    def test_empty_line(self, session):
        """Blank input does nothing."""
        response = session.submit("   ")
        assert response.stdout == ""
        assert response.exit_code == 0
        assert session.state.history == []

    def test_command_output(self, session):
        """Plain commands return their output."""
        response = session.submit("cat notes.txt")
        assert response.stdout == "alpha\nbeta\ngamma\n"
        assert response.prompt == "student@lab:~$ "

    def test_cd_updates_prompt_and_pwd(self, session):
        """cd moves the session and keeps PWD/OLDPWD current."""
        session.submit("cd docs")
        assert session.prompt == "student@lab:~/docs$ "
        assert session.state.environment.get("PWD") == "/home/student/docs"
        assert session.state.environment.get("OLDPWD") == "/home/student"

    def test_cd_dash(self, session):
        """cd - returns to the previous directory and prints it."""
        assert session.submit("cd -").stderr == "cd: OLDPWD not set"
        session.submit("cd /tmp")
        response = session.submit("cd -")
        assert response.stdout == "/home/student"
        assert session.context.current_path == "/home/student"

    def test_unknown_command(self, session):
        """Unknown commands exit 127 and feed $?."""
        assert session.submit("frobnicate").exit_code == 127
        assert session.submit("echo $?").stdout == "127"

    def test_variable_expansion(self, session):
        """Exported variables expand in later commands."""
        session.submit("export AGENT=lighthouse")
        assert session.submit("echo $AGENT $MISSION").stdout == "lighthouse unit"

    def test_expansion_after_quoted_apostrophe(self, session):
        """Variables after a double-quoted apostrophe still expand."""
        assert session.submit("echo \"don't\" $HOME 'x'").stdout == "don't /home/student x"

    def test_history(self, session):
        """Every non-empty line is recorded."""
        session.submit("pwd")
        session.submit("ls")
        assert session.submit("history").stdout == "    1  pwd\n    2  ls\n    3  history"

    def test_redirection_syntax_error(self, session):
        """A dangling '>' is a syntax error with exit 2."""
        response = session.submit("echo hi >")
        assert response.exit_code == 2
        assert "syntax error" in response.stderr

    def test_input_redirection(self, session):
        """'<' feeds a file to stdin."""
        assert session.submit("wc -l < notes.txt").stdout == "      3"

    def test_output_redirection(self, session):
        """'>' writes the file and confirms."""
        response = session.submit("echo hello > out.txt")
        assert response.stdout == "Output redirected to out.txt"
        assert session.fs.read_text("/home/student/out.txt") == "hello"

    def test_local_exit(self, session):
        """exit on the local shell ends the session."""
        assert session.submit("exit").exit_requested


class TestSudo:
    """Tests for the sudo password gate."""

    def test_password_prompt(self, session):
        """sudo switches to password mode with a masked prompt."""
        response = session.submit("sudo cat /root/secret.txt")
        assert response.mask_input
        assert response.stdout == ""
        assert isinstance(session.state.mode, PasswordMode)
        assert session.awaiting_password
        assert session.prompt == "[sudo] password for student: "

    def test_correct_password(self, session):
        """The right password runs the command as root."""
        response = sudo(session, "sudo cat /root/secret.txt")
        assert response.stdout == "flag\n"
        assert isinstance(session.state.mode, NormalMode)

    def test_wrong_password(self, session):
        """A wrong password aborts the command."""
        response = sudo(session, "sudo cat /root/secret.txt", password="guess")
        assert response.stderr == SUDO_FAILURE
        assert response.exit_code == 1
        assert isinstance(session.state.mode, NormalMode)

    def test_password_not_in_history(self, session):
        """The password line is never recorded."""
        sudo(session, "sudo whoami")
        assert session.state.history == ["sudo whoami"]

    def test_sudo_whoami(self, session):
        """whoami under sudo is root, without it the learner."""
        assert sudo(session, "sudo whoami").stdout == "root"
        assert session.submit("whoami").stdout == "student"

    def test_redirect_written_as_user(self, session):
        """The shell, not sudo, opens the redirect target."""
        response = sudo(session, "sudo cat /root/secret.txt > /tmp/copy.txt")
        assert response.stdout == "Output redirected to /tmp/copy.txt"
        assert session.fs.read_text("/tmp/copy.txt") == "flag\n"
        assert session.fs.stat("/tmp/copy.txt").owner == "student"

    def test_redirect_into_root_area_denied(self, session):
        """sudo does not make a root-owned redirect target writable."""
        response = sudo(session, "sudo echo x > /root/x.txt")
        assert response.stderr == "bash: /root/x.txt: Permission denied"
        assert not session.fs.exists("/root/x.txt")

    def test_sudo_creates_root_owned(self, session):
        """Files created under sudo belong to root."""
        sudo(session, "sudo touch /tmp/root-file")
        assert session.fs.stat("/tmp/root-file").owner == "root"


class TestHeredoc:
    """Tests for heredoc input."""

    def test_heredoc_to_file(self, session):
        """Lines up to the marker are written to the target."""
        response = session.submit("cat << EOF > plan.txt")
        assert response.prompt == "> "
        assert isinstance(session.state.mode, HeredocMode)
        session.submit("line one")
        session.submit("line two")
        response = session.submit("EOF")
        assert response.stdout == "Heredoc input captured: 2 lines written to plan.txt"
        assert session.fs.read_text("/home/student/plan.txt") == "line one\nline two\n"
        assert isinstance(session.state.mode, NormalMode)

    def test_heredoc_to_terminal(self, session):
        """Without a target the body is printed."""
        session.submit("cat <<END")
        session.submit("hello")
        assert session.submit("END").stdout == "hello\n"

    def test_heredoc_append(self, session):
        """'>>' appends the body."""
        session.submit("cat << EOF >> notes.txt")
        session.submit("delta")
        session.submit("EOF")
        assert session.fs.read_text("/home/student/notes.txt") == "alpha\nbeta\ngamma\ndelta\n"

    def test_heredoc_lines_not_in_history(self, session):
        """Only the opening command is recorded."""
        session.submit("cat << EOF")
        session.submit("secret body")
        session.submit("EOF")
        assert session.state.history == ["cat << EOF"]

    def test_heredoc_with_sudo(self, session):
        """The body survives the password prompt."""
        session.submit("sudo cat << EOF > /tmp/p.txt")
        session.submit("body")
        prompt = session.submit("EOF")
        assert prompt.mask_input
        response = session.submit("hunter2")
        assert response.stdout == "Heredoc input captured: 1 lines written to /tmp/p.txt"
        assert session.fs.read_text("/tmp/p.txt") == "body\n"


class TestRemote:
    """Tests for ssh sessions through the engine."""

    def test_ssh_round_trip(self, session):
        """ssh changes the prompt and view; exit restores them."""
        response = session.submit("ssh agent@remote-server")
        assert response.stdout == "Connected to remote-server as agent"
        assert session.prompt == "agent@remote-server:~$ "
        assert session.submit("pwd").stdout == "/home/agent"
        assert session.submit("whoami").stdout == "agent"

        session.submit("touch remote.txt")
        assert session.fs.exists("/remotes/agent/filesystem/home/agent/remote.txt")
        assert not session.fs.exists("/home/agent/remote.txt")

        response = session.submit("exit")
        assert response.stdout == "logout\nConnection to remote-server closed (session duration: 0s)"
        assert not response.exit_requested
        assert session.prompt == "student@lab:~$ "

    def test_remote_view_is_isolated(self, session):
        """The local tree is not visible from the remote host."""
        session.submit("ssh agent@remote-server")
        assert "No such file" in session.submit("cat /home/student/notes.txt").stderr

    def test_remote_cd_does_not_move_local(self, session):
        """cd on the remote host leaves the local directory alone."""
        session.submit("ssh agent@remote-server")
        session.submit("mkdir work")
        session.submit("cd work")
        assert session.prompt == "agent@remote-server:~/work$ "
        session.submit("exit")
        assert session.context.current_path == "/home/student"

    def test_scp_then_ssh(self, session):
        """A file uploaded with scp is there after logging in."""
        session.submit("scp notes.txt agent@remote-server:~")
        session.submit("ssh agent@remote-server")
        assert session.submit("cat notes.txt").stdout == "alpha\nbeta\ngamma\n"


class TestIntents:
    """Tests for pager, editor and confirmation intents."""

    def test_confirm_cancelled(self, session):
        """Cancelling a destructive command leaves everything in place."""
        response = session.submit("rm report.txt")
        assert isinstance(response.intent, ConfirmCommand)
        assert response.intent.check.level is WarningLevel.CRITICAL
        assert session.pending_intent is response.intent

        blocked = session.submit("ls")
        assert blocked.stderr == "shellquest: waiting for the confirm to close"

        response = session.resolve(Cancelled())
        assert response.stdout == "Command cancelled."
        assert session.fs.exists("/home/student/report.txt")
        assert session.pending_intent is None

    def test_confirm_accepted(self, session):
        """Confirming runs the command."""
        session.submit("rm report.txt")
        response = session.resolve(Confirmed())
        assert response.exit_code == 0
        assert not session.fs.exists("/home/student/report.txt")

    def test_guard_disabled(self, adventure, store):
        """With confirmation off, destructive commands run immediately."""
        session = TrainingSession(adventure, sudo_password="x", confirm_destructive=False, store=store)
        try:
            assert session.submit("rm report.txt").intent is None
            assert not session.fs.exists("/home/student/report.txt")
        finally:
            session.close()

    def test_editor_saved(self, session):
        """nano opens an editor; saving writes the file."""
        response = session.submit("nano draft.txt")
        assert isinstance(response.intent, OpenEditor)
        assert response.intent.is_new
        response = session.resolve(Saved("first\nsecond\n"))
        assert response.stdout == "[ Wrote 2 lines ]"
        assert session.fs.read_text("/home/student/draft.txt") == "first\nsecond\n"

    def test_editor_cancelled(self, session):
        """Cancelling the editor leaves the file unchanged."""
        session.submit("nano notes.txt")
        session.resolve(Cancelled())
        assert session.fs.read_text("/home/student/notes.txt") == "alpha\nbeta\ngamma\n"

    def test_pager(self, session):
        """less hands the content to the front-end."""
        response = session.submit("less notes.txt")
        assert isinstance(response.intent, OpenPager)
        assert response.intent.content == "alpha\nbeta\ngamma\n"
        session.resolve(Cancelled())
        assert isinstance(session.state.mode, NormalMode)

    def test_nothing_to_resolve(self, session):
        """resolve() without a pending intent is an error."""
        assert session.resolve(Confirmed()).stderr == "shellquest: nothing to resolve"

    def test_response_to_dict(self, session):
        """Responses serialize their intent."""
        data = session.submit("less notes.txt").to_dict()
        assert data["intent"] == {"kind": "pager", "path": "/home/student/notes.txt", "command": "less"}


class TestProgression:
    """Tests for validation and progress through the engine."""

    def test_task_event(self, session):
        """A matching command completes the current task."""
        response = session.submit("pwd")
        assert [event.task_id for event in response.events] == ["pwd"]
        assert session.tracker.current_task.id == "mkdir"

    def test_full_adventure(self, session):
        """Completing every task finishes the adventure."""
        session.submit("pwd")
        response = session.submit("mkdir work")
        assert isinstance(response.events[-1], MissionCompleted)
        response = sudo(session, "sudo cat /root/secret.txt")
        assert [type(event) for event in response.events] == [TaskCompleted, MissionCompleted, AdventureCompleted]
        assert session.describe_task() == "Adventure complete. Type :reset to play again."

    def test_denied_output_does_not_complete_pattern(self, session):
        """outputPattern looks at stdout only."""
        session.submit("pwd")
        session.submit("mkdir work")
        response = session.submit("cat /root/secret.txt")
        assert response.events == []

    def test_progress_is_saved(self, session, store, adventure):
        """Completing a task persists progress."""
        session.submit("pwd")
        assert store.load(adventure.id).completed_tasks == {"pwd"}

    def test_resume(self, session, store, adventure):
        """A new session picks up saved progress."""
        session.submit("pwd")
        resumed = TrainingSession(adventure, sudo_password="x", store=store)
        try:
            assert resumed.tracker.current_task.id == "mkdir"
        finally:
            resumed.close()
        fresh = TrainingSession(adventure, sudo_password="x", store=store, resume=False)
        try:
            assert fresh.tracker.current_task.id == "pwd"
        finally:
            fresh.close()

    def test_reset_exercise(self, session, store, adventure):
        """Reset restores the filesystem, progress and environment."""
        session.submit("pwd")
        session.submit("rm notes.txt")
        session.resolve(Confirmed())
        session.submit("export AGENT=x")
        session.submit("cd /tmp")

        session.reset_exercise()
        assert session.fs.exists("/home/student/notes.txt")
        assert session.tracker.current_task.id == "pwd"
        assert session.state.environment.get("AGENT") is None
        assert session.context.current_path == "/home/student"
        assert store.load(adventure.id) is None

    @pytest.mark.parametrize(
        "lines",
        [
            ["sudo whoami"],
            ["cat << EOF > plan.txt", "first line"],
            ["ssh agent@remote-server"],
            ["ssh agent@remote-server", "sudo cat /etc/hosts"],
        ],
        ids=["password", "heredoc", "ssh", "ssh-password"],
    )
    def test_reset_leaves_no_pending_mode(self, session, lines):
        """Reset drops a pending password, heredoc or remote session."""
        for line in lines:
            session.submit(line)
        session.reset_exercise()
        assert isinstance(session.state.mode, NormalMode)
        assert session.state.remote is None
        assert not session.awaiting_password
        assert session.prompt == "student@lab:~$ "
        assert session.submit("pwd").stdout == "/home/student"
        assert not session.fs.exists("/home/student/plan.txt")


class TestMetaCommands:
    """Tests for ':' meta-commands."""

    def test_not_meta(self, session):
        """Ordinary lines are not meta-commands."""
        assert session.handle_meta("ls") is None

    def test_hint(self, session):
        """:hint reveals hints and records their use."""
        assert session.handle_meta(":hint").stdout == "Where are you?"
        assert session.handle_meta(":hint 3").stdout == "pwd"
        assert session.tracker.progress.hints_used == {"pwd": 3}
        assert session.handle_meta(":hint x").exit_code == 1

    def test_task(self, session):
        """:task describes the current mission and task."""
        expected = "Mission: Basics\nFind your way around.\nTask: Print the working directory."
        assert session.handle_meta(":task").stdout == expected

    def test_progress(self, session):
        """:progress summarizes completion and score."""
        session.submit("pwd")
        expected = "Unit Adventure: 33% complete\nMissions: 0/2  Tasks: 1/3  Score: 1000"
        assert session.handle_meta(":progress").stdout == expected

    def test_reset_and_quit(self, session):
        """:reset and :quit work from the prompt."""
        assert session.handle_meta(":reset").stdout == "Exercise reset."
        assert session.handle_meta(":quit").exit_requested

    def test_unknown(self, session):
        """Unknown meta-commands are reported."""
        assert session.handle_meta(":dance").stderr.startswith("unknown meta-command ':dance'")

    def test_not_available_while_blocked(self, session):
        """Meta-commands wait until the session is back to normal."""
        session.submit("cat << EOF")
        assert session.handle_meta(":hint") is None

    def test_without_adventure(self, bare_session):
        """A bare shell has no tasks or hints."""
        assert bare_session.handle_meta(":task").stdout == "No adventure loaded."
        assert bare_session.handle_meta(":hint").stdout == "No hint available."
        assert bare_session.submit("pwd").events == []


class TestDescribeEvent:
    """Tests for event announcements."""

    def test_descriptions(self):
        """Each event kind has its own line."""
        assert describe_event(TaskCompleted("t", "m", "Do it.")) == "[+] Task complete: Do it."
        assert describe_event(MissionCompleted("m", "Basics", "Nice.")) == "[*] Mission complete: Basics\n    Nice."
        assert describe_event(MissionCompleted("m", "Basics")) == "[*] Mission complete: Basics"
        assert describe_event(AdventureCompleted("a", 990)) == "[*] Adventure complete! Final score: 990"
