"""Tests for shellquest.destructive module."""

from shellquest.destructive import WarningLevel, detect_destructive_command, safer_alternative


def check(command, fs=None, critical=()):
    return detect_destructive_command(
        command, current_path="/home/student", username="student", critical_paths=critical, fs=fs
    )


class TestDetectDestructiveCommand:
    """Tests for classifying dangerous commands."""

    def test_safe_commands(self, fs):
        """Everyday commands are not flagged."""
        assert check("ls -la", fs) is None
        assert check("cat notes.txt", fs) is None
        assert check("echo hi > new.txt", fs) is None

    def test_rm_protected_directory(self):
        """Deleting a system directory is critical."""
        result = check("rm -rf /etc")
        assert result.level is WarningLevel.CRITICAL
        assert result.affected_paths == ["/etc"]

    def test_rm_home_directory(self):
        """The user's own home counts as protected."""
        assert check("rm -r ~").level is WarningLevel.CRITICAL

    def test_rm_critical_path(self, fs):
        """Paths the adventure marks critical are critical."""
        result = check("rm report.txt", fs, critical=["/home/student/report.txt"])
        assert result.level is WarningLevel.CRITICAL

    def test_rm_parent_of_critical_path(self, fs):
        """Removing a directory that contains a critical path is critical."""
        result = check("rm -r /var", fs)
        assert result.level is WarningLevel.CRITICAL

    def test_recursive_important(self, fs):
        """Recursive deletion of important-looking paths is dangerous."""
        fs.mkdir("/home/student/backup")
        assert check("rm -r backup", fs).level is WarningLevel.DANGER

    def test_recursive_plain_directory(self, fs):
        """Recursive deletion of an ordinary directory is a warning."""
        assert check("rm -r docs", fs).level is WarningLevel.WARNING

    def test_rm_important_file(self, fs):
        """Single files that look important still warn."""
        assert check("rm notes.txt", fs).level is WarningLevel.WARNING

    def test_missing_targets_ignored(self, fs):
        """Targets that do not exist never prompt."""
        assert check("rm -rf ghost.txt", fs) is None

    def test_sudo_prefix(self):
        """sudo does not hide a dangerous command."""
        assert check("sudo rm -rf /").level is WarningLevel.CRITICAL

    def test_disk_commands(self):
        """Disk tools are always critical."""
        assert check("dd if=/dev/zero of=/dev/sda").level is WarningLevel.CRITICAL

    def test_mv_critical(self, fs):
        """Moving critical files warns but can be undone."""
        result = check("mv report.txt /tmp", fs, critical=["/home/student/report.txt"])
        assert result.level is WarningLevel.WARNING
        assert result.can_recover

    def test_overwrite_important_file(self, fs):
        """'>' over an existing important file warns."""
        result = check("echo x > notes.txt", fs)
        assert result.level is WarningLevel.WARNING
        assert result.affected_paths == ["/home/student/notes.txt"]

    def test_append_not_flagged(self, fs):
        """'>>' keeps existing content and is safe."""
        assert check("echo x >> notes.txt", fs) is None


class TestDestructiveCheck:
    """Tests for the check's presentation."""

    def test_to_dict(self):
        """to_dict carries the presentation fields."""
        data = check("rm -rf /etc").to_dict()
        assert data["level"] == "critical"
        assert data["title"] == "CRITICAL: Destructive Operation"
        assert data["confirm_label"] == "I understand the risk"
        assert "This cannot be undone." in data["message"]

    def test_message_mentions_alternative(self, fs):
        """The message suggests a safer way."""
        message = check("rm -r docs", fs).message
        assert "Safer alternative: ls -R docs first" in message


class TestSaferAlternative:
    """Tests for safer_alternative."""

    def test_suggestions(self):
        """Each risky pattern has a matching suggestion."""
        assert safer_alternative("rm file") == "mv the file into a backup directory instead of deleting it"
        assert safer_alternative("mv a b") == "cp the file first so the original stays in place"
        assert safer_alternative("echo x > f") == "use '>>' to append instead of overwriting"
        assert safer_alternative("ls") is None
