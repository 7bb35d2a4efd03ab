"""Tests for per-job workspaces."""

from matrixci.dsl import matrix, native, sh
from matrixci.expand import expand
from matrixci.workspace import WorkspaceManager, job_slug


def _jobs():
    return expand(matrix("m", native("test-cross", ["arm-linux", "x86_64-linux"], sh("s", "echo"))))


def test_job_slug():
    assert job_slug(_jobs()[0]) == "test-cross_arm-linux"


def test_isolated_copies(tmp_path):
    src = tmp_path / "src"
    (src / "crate").mkdir(parents=True)
    (src / "crate" / "lib.rs").write_text("fn main() {}")
    (src / ".git").mkdir()
    (src / "target").mkdir()

    manager = WorkspaceManager(src, tmp_path / "work")
    a, b = (manager.prepare(j, "run1") for j in _jobs())

    assert a != b
    assert (a / "crate" / "lib.rs").read_text() == "fn main() {}"
    assert not (a / ".git").exists()
    assert not (a / "target").exists()

    (a / "crate" / "lib.rs").write_text("changed")
    assert (b / "crate" / "lib.rs").read_text() == "fn main() {}"

    manager.release(a)
    assert not a.exists()
    manager.release_run("run1")
    assert not (tmp_path / "work" / "run1").exists()


def test_work_root_inside_source_is_not_copied(tmp_path):
    (tmp_path / "file.txt").write_text("x")
    manager = WorkspaceManager(tmp_path, "ws")
    dest = manager.prepare(_jobs()[0], "r")
    assert (dest / "file.txt").exists()
    assert not (dest / "ws").exists()


def test_shared_mode(tmp_path):
    manager = WorkspaceManager(tmp_path, isolate=False)
    assert manager.prepare(_jobs()[0], "r") == tmp_path.resolve()
    manager.release(tmp_path)
    assert tmp_path.exists()


def test_keep(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    manager = WorkspaceManager(src, tmp_path / "work", keep=True)
    dest = manager.prepare(_jobs()[0], "r")
    manager.release(dest)
    manager.release_run("r")
    assert dest.exists()
