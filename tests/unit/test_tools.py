"""Tests for capability-guarded role tools."""

import sys

import pytest

from agent_relay.agents.tools import RoleTools, model_tools_for
from agent_relay.errors import ToolError, UnauthorizedError


@pytest.fixture
def project(repo_root):
    (repo_root / "app").mkdir()
    (repo_root / "app" / "page.tsx").write_text("export default function Page() {}\n")
    (repo_root / "lib").mkdir()
    (repo_root / "lib" / "cart.ts").write_text("export const total = 0\nexport const items = []\n")
    (repo_root / "node_modules").mkdir()
    (repo_root / "node_modules" / "dep.ts").write_text("export const total = 1\n")
    return repo_root


def tools_for(registry, role, root):
    return RoleTools(registry, role, root)


class TestResearch:

    def test_read_file(self, registry, project):
        tools = tools_for(registry, "ui-planner", project)
        assert "Page" in tools.read_file("app/page.tsx")

    def test_read_missing_file(self, registry, project):
        with pytest.raises(ToolError):
            tools_for(registry, "ui-planner", project).read_file("app/missing.tsx")

    def test_path_escape_refused(self, registry, project):
        (project.parent / "secret.txt").write_text("s3cret")
        tools = tools_for(registry, "executor", project)
        with pytest.raises(UnauthorizedError, match="outside project root"):
            tools.read_file("../secret.txt")
        with pytest.raises(UnauthorizedError):
            tools.read_file(str(project.parent / "secret.txt"))

    def test_search_glob_skips_vendor_dirs(self, registry, project):
        tools = tools_for(registry, "logic-planner", project)
        assert tools.search_glob("**/*.ts") == ["lib/cart.ts"]

    def test_search_text(self, registry, project):
        tools = tools_for(registry, "reviewer", project)
        assert tools.search_text(r"export const \w+ = 0") == [
            ("lib/cart.ts", 1, "export const total = 0"),
        ]

    def test_search_text_bad_pattern(self, registry, project):
        with pytest.raises(ToolError):
            tools_for(registry, "reviewer", project).search_text("(unclosed")


class TestCapabilities:

    def test_planner_cannot_write(self, registry, project):
        tools = tools_for(registry, "ui-planner", project)
        with pytest.raises(UnauthorizedError):
            tools.write_new_file("app/new.tsx", "x")
        assert not (project / "app" / "new.tsx").exists()

    def test_planner_cannot_run_commands(self, registry, project):
        with pytest.raises(UnauthorizedError):
            tools_for(registry, "logic-planner", project).run_command("echo hi")

    def test_refactorer_cannot_create_files(self, registry, project):
        with pytest.raises(UnauthorizedError):
            tools_for(registry, "refactorer", project).write_new_file("app/x.tsx", "x")

    def test_write_new_file(self, registry, project):
        tools = tools_for(registry, "executor", project)
        tools.write_new_file("app/checkout/page.tsx", "export {}\n")
        assert (project / "app" / "checkout" / "page.tsx").read_text() == "export {}\n"
        assert tools.touched == ["app/checkout/page.tsx"]

    def test_write_existing_file_refused(self, registry, project):
        tools = tools_for(registry, "executor", project)
        with pytest.raises(UnauthorizedError, match="already exists"):
            tools.write_new_file("app/page.tsx", "overwritten")
        assert "Page" in (project / "app" / "page.tsx").read_text()

    def test_edit_file(self, registry, project):
        tools = tools_for(registry, "refactorer", project)
        tools.edit_file("lib/cart.ts", "total = 0", "total = 10")
        assert "total = 10" in (project / "lib" / "cart.ts").read_text()
        assert tools.touched == ["lib/cart.ts"]

    def test_edit_missing_file_refused(self, registry, project):
        with pytest.raises(UnauthorizedError, match="does not exist"):
            tools_for(registry, "refactorer", project).edit_file("lib/none.ts", "a", "b")

    def test_edit_text_not_found(self, registry, project):
        with pytest.raises(ToolError):
            tools_for(registry, "refactorer", project).edit_file("lib/cart.ts", "nope", "b")

    def test_run_command(self, registry, project):
        tools = tools_for(registry, "reviewer", project)
        result = tools.run_command(f'"{sys.executable}" -c "print(42)"')
        assert result.ok
        assert result.stdout.strip() == "42"

    def test_run_command_failure_is_reported(self, registry, project):
        result = tools_for(registry, "reviewer", project).run_command(
            f'"{sys.executable}" -c "import sys; sys.exit(3)"'
        )
        assert not result.ok
        assert result.returncode == 3


def test_model_tools_follow_contract(registry):
    assert model_tools_for(registry.resolve("ui-planner")) == ["Read", "Glob", "Grep"]
    assert model_tools_for(registry.resolve("reviewer")) == ["Read", "Glob", "Grep"]
