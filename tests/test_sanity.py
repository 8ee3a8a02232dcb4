from patchwright.diffs import check_against_worktree

CREATE_README = """diff --git a/README.md b/README.md
new file mode 100644
--- /dev/null
+++ b/README.md
@@ -0,0 +1 @@
+# demo
"""

DELETE_README = """diff --git a/README.md b/README.md
deleted file mode 100644
--- a/README.md
+++ /dev/null
@@ -1 +0,0 @@
-# demo
"""


def test_creating_existing_file_rejected(repo):
    reasons = check_against_worktree(CREATE_README, repo, "add a readme")
    assert len(reasons) == 1
    assert "create existing file 'README.md'" in reasons[0]


def test_creating_new_file_allowed(repo):
    diff = CREATE_README.replace("README.md", "docs/guide.md")
    assert check_against_worktree(diff, repo, "add a guide") == []


def test_deleting_missing_file_rejected(repo):
    diff = DELETE_README.replace("README.md", "gone.txt")
    reasons = check_against_worktree(diff, repo, "delete gone.txt")
    assert "does not exist" in reasons[0]


def test_deletion_requires_intent(repo):
    assert check_against_worktree(DELETE_README, repo, "tidy up the docs")
    assert check_against_worktree(DELETE_README, repo, "Remove the README") == []
