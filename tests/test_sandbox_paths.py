from pathlib import Path

import pytest

from sandbox_paths import SandboxResolver, SandboxViolation


def make_resolver(tmp_path: Path, prefix: str = "/workspace") -> SandboxResolver:
    root = tmp_path / "root"
    root.mkdir(parents=True, exist_ok=True)
    return SandboxResolver(root, prefix)


@pytest.mark.parametrize(
    "client_path, expected",
    [
        ("/workspace/notes/todo.md", "notes/todo.md"),
        ("/workspace", ""),
        ("/workspace/", ""),
        ("", ""),
        ("/", ""),
        ("  notes\\sub\\a.md  ", "notes/sub/a.md"),
        ("/notes/./a/../b.md", "notes/b.md"),
        ("notes/", "notes"),
        ("//notes//deep", "notes/deep"),
        ("/workspacex/a.md", "workspacex/a.md"),
        ("../etc/passwd", "../etc/passwd"),
    ],
)
def test_normalize_produces_canonical_relative_paths(tmp_path, client_path, expected):
    resolver = make_resolver(tmp_path)

    assert resolver.normalize(client_path) == expected


def test_normalize_accepts_missing_input(tmp_path):
    resolver = make_resolver(tmp_path)

    assert resolver.normalize(None) == ""


def test_resolve_stays_within_root(tmp_path):
    resolver = make_resolver(tmp_path)

    assert resolver.resolve("") == resolver.root
    target = resolver.resolve("notes/todo.md")
    assert target == resolver.root / "notes" / "todo.md"
    assert resolver.root in target.parents


def test_resolve_treats_leading_slash_as_root_relative(tmp_path):
    resolver = make_resolver(tmp_path)

    assert resolver.resolve("/etc/passwd") == resolver.root / "etc" / "passwd"


@pytest.mark.parametrize("bad", ["..", "../x", "a/../../x", "notes/../../../etc", "..\\secret"])
def test_resolve_rejects_escapes(tmp_path, bad):
    resolver = make_resolver(tmp_path)

    with pytest.raises(SandboxViolation):
        resolver.resolve(bad)


def test_normalized_escape_is_rejected_by_resolve(tmp_path):
    resolver = make_resolver(tmp_path)

    rel = resolver.normalize("/workspace/../../outside.md")
    with pytest.raises(SandboxViolation):
        resolver.resolve(rel)


def test_resolve_rejects_symlink_leading_outside(tmp_path):
    resolver = make_resolver(tmp_path)
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.md").write_text("secret", encoding="utf8")
    (resolver.root / "link").symlink_to(outside, target_is_directory=True)

    with pytest.raises(SandboxViolation):
        resolver.resolve("link/secret.md")


def test_resolve_returns_link_not_its_target(tmp_path):
    resolver = make_resolver(tmp_path)
    (resolver.root / "real.md").write_text("real", encoding="utf8")
    (resolver.root / "link.md").symlink_to(resolver.root / "real.md")

    target = resolver.resolve("link.md")

    assert target == resolver.root / "link.md"
    assert target.is_symlink()
    assert resolver.contains(target)


def test_contains_rejects_link_to_outside_file(tmp_path):
    resolver = make_resolver(tmp_path)
    outside = tmp_path / "outside.txt"
    outside.write_text("secret", encoding="utf8")
    (resolver.root / "leak.txt").symlink_to(outside)

    assert not resolver.contains(resolver.root / "leak.txt")
    with pytest.raises(SandboxViolation):
        resolver.resolve("leak.txt")


def test_sandbox_violation_is_a_value_error(tmp_path):
    resolver = make_resolver(tmp_path)

    with pytest.raises(ValueError):
        resolver.resolve("../x")


def test_display_path_is_inverse_of_prefix_stripping(tmp_path):
    resolver = make_resolver(tmp_path)

    assert resolver.to_display_path("notes/todo.md") == "/workspace/notes/todo.md"
    assert resolver.to_display_path("") == "/workspace"
    assert resolver.normalize(resolver.to_display_path("notes/todo.md")) == "notes/todo.md"


def test_custom_prefix_is_cleaned(tmp_path):
    resolver = make_resolver(tmp_path, prefix="vault/")

    assert resolver.workspace_prefix == "/vault"
    assert resolver.normalize("/vault/a.md") == "a.md"
    assert resolver.to_display_path("a.md") == "/vault/a.md"

