import os
import shutil
import subprocess

import pytest

from gitstats import ProgressReporter


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def commit_log_lines():
    """`%H|%an|%at|%s` output, newest first, with one repeated hash."""
    return [
        "ccc333|Alice Smith|1700200000|fix bug",
        "bbb222|Bob Jones|1700100000|add feature",
        "aaa111|alice smith|1700000000|initial commit",
        "bbb222|Bob Jones|1700100000|add feature",
    ]


@pytest.fixture
def numstat_lines():
    """`%H|%an|%at` headers followed by numstat lines, as git prints them."""
    return [
        "ccc333|Alice Smith|1700200000",
        "",
        "5\t8\tsrc/main.py",
        "2\t1\tsrc/utils.py",
        "",
        "bbb222|Bob Jones|1700100000",
        "",
        "10\t3\tsrc/main.py",
        "-\t-\tassets/logo.png",
        "40\t0\ttests/test_main.py",
        "",
        "aaa111|Alice Smith|1700000000",
        "",
        "50\t0\tsrc/main.py",
        "30\t0\tsrc/utils.py",
    ]


@pytest.fixture
def name_only_lines():
    return [
        "src/main.py",
        "src/utils.py",
        "",
        "src/main.py",
        "tests/test_main.py",
        "",
        "src/main.py",
        "src/utils.py",
    ]


@pytest.fixture
def git_repo(tmp_path):
    """Four commits, two authors, fixed dates."""
    if shutil.which("git") is None:
        pytest.skip("git executable not available")

    repo = tmp_path / "repo"
    repo.mkdir()

    def run(*args, author=None, epoch=None):
        env = dict(os.environ)
        if author:
            email = author.split()[0].lower() + "@example.com"
            env.update(
                GIT_AUTHOR_NAME=author,
                GIT_AUTHOR_EMAIL=email,
                GIT_COMMITTER_NAME=author,
                GIT_COMMITTER_EMAIL=email,
            )
        if epoch:
            env.update(
                GIT_AUTHOR_DATE=f"@{epoch} +0000",
                GIT_COMMITTER_DATE=f"@{epoch} +0000",
            )
        subprocess.run(
            ["git", "-C", str(repo)] + list(args),
            check=True,
            capture_output=True,
            env=env,
        )

    def commit(message, author, epoch):
        run("add", ".")
        run("commit", "-m", message, author=author, epoch=epoch)

    run("init")
    run("config", "user.email", "tester@test.com")
    run("config", "user.name", "Tester")
    run("config", "commit.gpgsign", "false")

    # Commit 1 (Alice): two new files
    (repo / "app.py").write_text("print('hello')\n", encoding="utf-8")
    (repo / "lib.py").write_text("def helper(): pass\n", encoding="utf-8")
    commit("initial", "Alice Smith", 1700000000)

    # Commit 2 (Bob): one line added to app.py
    (repo / "app.py").write_text("print('hello')\nprint('world')\n", encoding="utf-8")
    commit("update app", "Bob Jones", 1700100000)

    # Commit 3 (Alice): readme plus a generated file
    (repo / "readme.md").write_text("# App\n", encoding="utf-8")
    (repo / "gen").mkdir()
    (repo / "gen" / "output.txt").write_text("generated\n", encoding="utf-8")
    commit("add readme", "Alice Smith", 1700200000)

    # Commit 4 (Alice): one more line in app.py
    (repo / "app.py").write_text(
        "print('hello')\nprint('world')\nprint('!')\n", encoding="utf-8"
    )
    commit("tweak app", "Alice Smith", 1700300000)

    return str(repo)
