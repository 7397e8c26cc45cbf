"""Tests for shellquest.vfs module."""

import pytest

from shellquest.vfs import VFSError, VirtualFS, format_mode, parse_permissions


class TestModeHelpers:
    """Tests for permission parsing and formatting."""

    def test_format_directory_mode(self):
        """Directory modes render with a leading d."""
        assert format_mode(0o040755) == "drwxr-xr-x"

    def test_format_file_mode(self):
        """File modes render with a leading dash."""
        assert format_mode(0o100600) == "-rw-------"

    def test_parse_octal_string(self):
        """Octal strings parse to permission bits."""
        assert parse_permissions("640") == 0o640

    def test_parse_symbolic_string(self):
        """rwx strings parse with or without the type character."""
        assert parse_permissions("rwxr-x---") == 0o750
        assert parse_permissions("drwxr-xr-x") == 0o755

    def test_parse_rejects_garbage(self):
        """Malformed permission strings raise ValueError."""
        with pytest.raises(ValueError):
            parse_permissions("rwz------")


class TestQueries:
    """Tests for read-only VirtualFS operations."""

    def test_root_exists(self):
        """A new filesystem has only the root directory."""
        fs = VirtualFS()
        assert fs.is_dir("/")
        assert fs.readdir("/") == []

    def test_stat_missing_returns_none(self, fs):
        """stat() reports absence with None instead of raising."""
        assert fs.stat("/nope") is None

    @pytest.mark.parametrize(
        "path", ["/home//student/./notes.txt", "/tmp/../home/student/notes.txt", "/../home/student/notes.txt/"]
    )
    def test_paths_are_normalized(self, fs, path):
        """Lookups collapse slashes, '.' and '..' the way the resolver does."""
        assert fs.read_text(path) == "alpha\nbeta\ngamma\n"

    def test_stat_file(self, fs):
        """stat() exposes size, owner and mode."""
        node = fs.stat("/home/student/notes.txt")
        assert node.is_file
        assert node.size == len("alpha\nbeta\ngamma\n")
        assert node.owner == "student"
        assert node.mode_string == "-rw-r--r--"

    def test_structure_owner_and_permissions(self, fs):
        """Owner and permissions from the structure are applied."""
        node = fs.stat("/root/secret.txt")
        assert node.owner == "root"
        assert node.permissions == 0o600
        assert fs.stat("/root").mode_string == "drwx------"

    def test_readdir_keeps_insertion_order(self, fs):
        """Entries are listed in the order they were created."""
        assert fs.readdir("/home/student") == ["notes.txt", "report.txt", "docs", ".hidden"]

    def test_readdir_on_file_raises(self, fs):
        """Listing a file raises ENOTDIR."""
        with pytest.raises(VFSError) as info:
            fs.readdir("/home/student/notes.txt")
        assert info.value.code == "ENOTDIR"

    def test_read_directory_raises(self, fs):
        """Reading a directory raises EISDIR."""
        with pytest.raises(VFSError) as info:
            fs.read_file("/home/student/docs")
        assert info.value.strerror == "Is a directory"

    def test_walk_is_preorder(self, fs):
        """walk() yields a directory before its children."""
        walked = [path for path, _ in fs.walk("/home/student/docs")]
        assert walked == ["/home/student/docs", "/home/student/docs/guide.md"]


class TestMutations:
    """Tests for VirtualFS mutations."""

    def test_mkdir_requires_parent(self, fs):
        """mkdir without a parent raises ENOENT."""
        with pytest.raises(VFSError) as info:
            fs.mkdir("/a/b")
        assert info.value.code == "ENOENT"

    def test_mkdir_existing_raises(self, fs):
        """mkdir on an existing name raises EEXIST."""
        with pytest.raises(VFSError) as info:
            fs.mkdir("/tmp")
        assert info.value.code == "EEXIST"

    def test_mkdir_tree_creates_ancestors(self, fs):
        """mkdir_tree creates every missing level."""
        fs.mkdir_tree("/tmp/a/b/c", owner="agent")
        assert fs.is_dir("/tmp/a/b/c")
        assert fs.stat("/tmp/a").owner == "agent"

    def test_write_file_keeps_owner_and_mode(self, fs):
        """Overwriting an existing file keeps its owner and permissions."""
        fs.write_file("/root/secret.txt", "new", owner="student")
        node = fs.stat("/root/secret.txt")
        assert node.owner == "root"
        assert node.permissions == 0o600
        assert fs.read_text("/root/secret.txt") == "new"

    def test_write_over_directory_raises(self, fs):
        """Writing to a directory path raises EISDIR."""
        with pytest.raises(VFSError):
            fs.write_file("/tmp", "data")

    def test_unlink_directory_raises(self, fs):
        """unlink refuses directories."""
        with pytest.raises(VFSError) as info:
            fs.unlink("/home/student/docs")
        assert info.value.code == "EISDIR"

    def test_rmdir_not_empty(self, fs):
        """rmdir refuses a directory with entries."""
        with pytest.raises(VFSError) as info:
            fs.rmdir("/home/student/docs")
        assert info.value.strerror == "Directory not empty"

    def test_remove_tree(self, fs):
        """remove_tree deletes a directory and its contents."""
        fs.remove_tree("/home/student/docs")
        assert not fs.exists("/home/student/docs/guide.md")
        assert not fs.exists("/home/student/docs")

    def test_rename_into_itself_raises(self, fs):
        """A directory cannot be moved below itself."""
        with pytest.raises(VFSError) as info:
            fs.rename("/home/student/docs", "/home/student/docs/inner")
        assert info.value.code == "EINVAL"

    def test_rename_moves_node(self, fs):
        """rename relocates the node and its contents."""
        fs.rename("/home/student/docs", "/tmp/docs")
        assert fs.is_file("/tmp/docs/guide.md")
        assert not fs.exists("/home/student/docs")

    def test_copy_tree_duplicates(self, fs):
        """copy_tree leaves the source in place and copies content."""
        fs.copy_tree("/home/student/docs", "/tmp/copy", owner="student")
        assert fs.read_text("/tmp/copy/guide.md") == "# Guide\nread me\n"
        assert fs.exists("/home/student/docs/guide.md")

    def test_chmod_keeps_type(self, fs):
        """chmod changes permission bits only."""
        fs.chmod("/home/student/docs", 0o700)
        node = fs.stat("/home/student/docs")
        assert node.is_dir
        assert node.mode_string == "drwx------"

    def test_remove_root_is_busy(self, fs):
        """The root directory cannot be removed."""
        with pytest.raises(VFSError) as info:
            fs.remove_tree("/")
        assert info.value.code == "EBUSY"


class TestSubtree:
    """Tests for subtree views."""

    def test_subtree_shares_nodes(self, fs):
        """Writes through a subtree land in the parent tree."""
        view = fs.subtree("/home/student")
        view.write_file("/new.txt", "hello")
        assert fs.read_text("/home/student/new.txt") == "hello"

    def test_subtree_cannot_escape(self, fs):
        """'..' at the view's root stays at the root."""
        view = fs.subtree("/home/student/docs")
        assert view.readdir("/../..") == ["guide.md"]

    def test_subtree_of_file_raises(self, fs):
        """Only directories can become a subtree root."""
        with pytest.raises(VFSError) as info:
            fs.subtree("/home/student/notes.txt")
        assert info.value.code == "ENOTDIR"


class TestFromStructure:
    """Tests for building a filesystem from a definition."""

    def test_empty_structure(self):
        """No structure yields just a root directory."""
        assert VirtualFS.from_structure(None).readdir("/") == []

    def test_type_inferred_from_children(self):
        """Nodes with children default to directories."""
        fs = VirtualFS.from_structure({"root": {"etc": {"children": {"motd": {"content": "hi"}}}}})
        assert fs.is_dir("/etc")
        assert fs.read_text("/etc/motd") == "hi"

    def test_unknown_type_raises(self):
        """Unknown node types are rejected."""
        with pytest.raises(ValueError):
            VirtualFS.from_structure({"root": {"dev": {"type": "socket"}}})
