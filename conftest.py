import subprocess

import pytest

from repo_heatmap import ProgressReporter


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def sample_numstat():
    """Three commits of `git log --numstat --pretty=format:` output."""
    return (
        "10\t0\tsrc/main.py\n"
        "30\t0\tsrc/utils.py\n"
        "\n"
        "5\t3\tsrc/main.py\n"
        "40\t0\ttests/test_main.py\n"
        "-\t-\tassets/logo.png\n"
        "\n"
        "0\t0\tsrc/{utils.py => helpers.py}\n"
        "2\t1\tsrc/main.py\n"
    )


@pytest.fixture
def sample_weight_map():
    return {"dir/a.go": 1, "dir/sub/b.go": 1, "other.go": 1}


@pytest.fixture
def git_repo(tmp_path):
    repo = tmp_path / "repo"
    repo.mkdir()

    def run(*args):
        subprocess.run(["git", "-C", str(repo)] + list(args),
                       check=True, capture_output=True)

    run("init")
    run("config", "user.email", "tester@test.com")
    run("config", "user.name",  "Tester")
    run("config", "diff.renames", "true")

    # Commit 1: add two files
    (repo / "app.py").write_text("print('hello')\n", encoding='utf-8')
    (repo / "lib").mkdir()
    (repo / "lib" / "util.py").write_text("def helper():\n    pass\n", encoding='utf-8')
    run("add", ".")
    run("commit", "-m", "initial")

    # Commit 2: modify both
    (repo / "app.py").write_text("print('hello')\nprint('world')\n", encoding='utf-8')
    (repo / "lib" / "util.py").write_text(
        "def helper():\n    return 1\n", encoding='utf-8'
    )
    run("add", ".")
    run("commit", "-m", "update both")

    # Commit 3: pure rename
    run("mv", "lib/util.py", "lib/helpers.py")
    run("commit", "-m", "rename util")

    # Commit 4: add docs
    (repo / "docs").mkdir()
    (repo / "docs" / "readme.md").write_text("# App\n", encoding='utf-8')
    run("add", ".")
    run("commit", "-m", "add readme")

    # Commit 5: root-level rename, printed without braces
    run("mv", "app.py", "main.py")
    run("commit", "-m", "rename app")

    return str(repo)
