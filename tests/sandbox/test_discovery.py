"""Tests for sandbox path discovery."""

import os
import shutil
import subprocess
import tempfile
import unittest
from unittest.mock import patch

from agent_sandbox.sandbox.base import BackendKind, MountMode, SandboxPlan
from agent_sandbox.sandbox.config import SandboxConfig
from agent_sandbox.sandbox import discovery
from agent_sandbox.sandbox.linux_isolator import BubblewrapIsolator
from agent_sandbox.sandbox.discovery import (
    add_agent_state_mounts,
    add_credential_mounts,
    add_executable_mounts,
    add_home_override,
    add_git_config_mounts,
    add_git_mounts,
    add_language_cache_mounts,
    add_linker_mounts,
    add_system_mounts,
    discover_mounts,
    git_metadata_dirs,
    linker_search_dirs,
    parse_git_includes,
)

HAVE_GIT = shutil.which("git") is not None


def _git(*args, cwd):
    subprocess.run(
        ["git", "-c", "user.name=test", "-c", "user.email=test@example.com", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
    )


def _fake_git(git_dir, common_dir, returncode=0):
    def runner(args, **kwargs):
        return subprocess.CompletedProcess(
            args, returncode, stdout=f"{git_dir}\n{common_dir}\n", stderr=""
        )

    return runner


class DiscoveryTestCase(unittest.TestCase):
    """Scratch home and project directories."""

    def setUp(self):
        """Set up a scratch tree."""
        self.root = os.path.realpath(tempfile.mkdtemp(prefix="agent_sandbox_test_"))
        self.home = os.path.join(self.root, "home")
        self.project = os.path.join(self.root, "project")
        os.makedirs(self.home)
        os.makedirs(self.project)

    def tearDown(self):
        """Clean up the scratch tree."""
        shutil.rmtree(self.root, ignore_errors=True)

    def make_plan(self, backend=BackendKind.LINUX_NAMESPACE):
        plan = SandboxPlan(backend=backend, working_directory=self.project)
        plan.add_path(self.project, MountMode.READ_WRITE, required=True)
        return plan

    def make_config(self, **environ):
        environ.setdefault("PATH", "/usr/bin:/bin")
        return SandboxConfig(environ=environ, home=self.home, cwd=self.project)

    def touch(self, *parts):
        path = os.path.join(*parts)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        open(path, "w").close()
        return path


class TestGitMounts(DiscoveryTestCase):
    """Test cases for repository metadata mounts."""

    def test_outside_repository(self):
        """Test that nothing is added when git reports no repository."""
        plan = self.make_plan()
        add_git_mounts(plan, self.project, runner=_fake_git("", "", returncode=128))
        self.assertEqual(len(list(plan.mounts())), 1)

    def test_git_missing(self):
        """Test that a missing git binary is tolerated."""

        def runner(args, **kwargs):
            raise FileNotFoundError("git")

        self.assertEqual(git_metadata_dirs(self.project, runner), (None, None))

    def test_relative_output_is_resolved_against_cwd(self):
        """Test that git's relative paths are made absolute."""
        git_dir, common = git_metadata_dirs(self.project, _fake_git(".git", ".git"))
        self.assertEqual(git_dir, os.path.join(self.project, ".git"))
        self.assertEqual(common, git_dir)

    def test_regular_repository_emits_single_metadata_bind(self):
        """Test that a non-linked repository in a subdirectory binds .git once."""
        repo = os.path.join(self.root, "repo")
        git_dir = os.path.join(repo, ".git")
        os.makedirs(git_dir)
        os.makedirs(os.path.join(repo, "pkg"))
        plan = SandboxPlan(working_directory=os.path.join(repo, "pkg"))
        plan.add_path(plan.working_directory, MountMode.READ_WRITE, required=True)

        add_git_mounts(plan, plan.working_directory, runner=_fake_git(git_dir, git_dir))

        self.assertEqual(
            [s.source for s in plan.read_write], [plan.working_directory, git_dir]
        )
        self.assertEqual(plan.read_only, [])

    def test_linked_worktree_emits_three_mounts(self):
        """Test the worktree dir, the common dir and its parent."""
        main = os.path.join(self.root, "main")
        common = os.path.join(main, ".git")
        worktree_git = os.path.join(common, "worktrees", "project")
        os.makedirs(worktree_git)

        plan = self.make_plan()
        add_git_mounts(plan, self.project, runner=_fake_git(worktree_git, common))

        self.assertEqual(
            [s.source for s in plan.read_write], [self.project, worktree_git, common]
        )
        self.assertEqual([s.source for s in plan.read_only], [main])

    def test_common_parent_equal_to_project_root_is_omitted(self):
        """Test that the traversal mount is skipped when it is the project."""
        common = os.path.join(self.project, ".git")
        other_git = os.path.join(self.root, "elsewhere", ".git", "worktrees", "x")
        os.makedirs(common)
        os.makedirs(other_git)

        plan = self.make_plan()
        add_git_mounts(plan, self.project, runner=_fake_git(other_git, common))

        self.assertEqual(plan.read_only, [])
        self.assertEqual(
            [s.source for s in plan.read_write], [self.project, other_git]
        )

    @unittest.skipUnless(HAVE_GIT, "git not installed")
    def test_real_worktree(self):
        """Test discovery against a real linked worktree."""
        main = os.path.join(self.root, "main")
        os.makedirs(main)
        _git("init", "-q", cwd=main)
        _git("commit", "-q", "--allow-empty", "-m", "init", cwd=main)
        worktree = os.path.join(self.root, "wt")
        _git("worktree", "add", "-q", worktree, cwd=main)

        plan = SandboxPlan(working_directory=worktree)
        plan.add_path(worktree, MountMode.READ_WRITE, required=True)
        add_git_mounts(plan, worktree)

        common = os.path.join(main, ".git")
        self.assertEqual(
            [s.source for s in plan.read_write],
            [worktree, os.path.join(common, "worktrees", "wt"), common],
        )
        self.assertEqual([s.source for s in plan.read_only], [main])

    @unittest.skipUnless(HAVE_GIT, "git not installed")
    def test_real_repository_root(self):
        """Test that a plain repository adds nothing beyond the project."""
        _git("init", "-q", cwd=self.project)
        plan = self.make_plan()
        add_git_mounts(plan, self.project)
        self.assertEqual([s.source for s in plan.mounts()], [self.project])


class TestGitConfigMounts(DiscoveryTestCase):
    """Test cases for git configuration files."""

    def test_symlinked_config_is_bound_at_dotfile_path(self):
        """Test that a symlinked dotfile is readable where git looks for it."""
        dotfiles = os.path.join(self.home, "dotfiles")
        real = self.touch(dotfiles, "gitconfig")
        dotfile = os.path.join(self.home, ".gitconfig")
        os.symlink(real, dotfile)

        plan = self.make_plan()
        add_git_config_mounts(plan, self.home)

        self.assertEqual(
            [(s.source, s.destination) for s in plan.read_only],
            [(real, real), (real, dotfile)],
        )
        argv = BubblewrapIsolator(bwrap_path="bwrap").render(plan, ["git"]).argv
        i = argv.index(dotfile)
        self.assertEqual(argv[i - 2 : i + 1], ["--ro-bind", real, dotfile])

    def test_symlinked_include_is_bound_at_include_path(self):
        """Test that include targets get the same treatment as the dotfile."""
        real_inc = self.touch(self.root, "store", "identity.inc")
        link = os.path.join(self.home, "identity.inc")
        os.symlink(real_inc, link)
        with open(os.path.join(self.home, ".gitconfig"), "w") as f:
            f.write("[include]\n\tpath = ~/identity.inc\n")

        plan = self.make_plan()
        add_git_config_mounts(plan, self.home)

        destinations = [s.destination for s in plan.read_only if s.source == real_inc]
        self.assertEqual(destinations, [real_inc, link])

    def test_symlinked_config_under_bound_home_is_not_remapped(self):
        """Test that a visible dotfile only needs its target bound."""
        real = self.touch(self.root, "dotfiles", "gitconfig")
        os.symlink(real, os.path.join(self.home, ".gitconfig"))

        plan = self.make_plan()
        plan.add_path(self.home, MountMode.READ_WRITE)
        add_git_config_mounts(plan, self.home)

        self.assertFalse(any(s.is_remap for s in plan.mounts()))
        self.assertEqual([s.source for s in plan.read_only], [real])

    def test_includes_are_followed(self):
        """Test include and includeIf paths, relative and tilde forms."""
        work = self.touch(self.home, ".config", "git", "work.inc")
        personal = self.touch(self.home, "personal.inc")
        with open(os.path.join(self.home, ".gitconfig"), "w") as f:
            f.write(
                "[user]\n"
                "\tname = Someone\n"
                "[include]\n"
                "\tpath = personal.inc\n"
                '[includeIf "gitdir:~/work/"]\n'
                '\tpath = "~/.config/git/work.inc"  # work identity\n'
                '[includeIf "gitdir:~/missing/"]\n'
                "\tpath = ~/nope.inc\n"
            )

        plan = self.make_plan()
        add_git_config_mounts(plan, self.home)

        self.assertEqual(
            [s.source for s in plan.read_only],
            [os.path.join(self.home, ".gitconfig"), personal, work],
        )
        self.assertTrue(all(s.mode is MountMode.READ_ONLY for s in plan.read_only))

    def test_parse_includes_ignores_other_sections(self):
        """Test that path keys outside include sections are ignored."""
        config = self.touch(self.home, ".gitconfig")
        with open(config, "w") as f:
            f.write("[core]\n\tpath = /etc/evil\n[include]\n\tpath = /etc/good\n")
        self.assertEqual(parse_git_includes(config, self.home), ["/etc/good"])

    def test_include_cycle_terminates(self):
        """Test that mutually including files are bound once each."""
        a = os.path.join(self.home, ".gitconfig")
        b = os.path.join(self.home, "b.inc")
        with open(a, "w") as f:
            f.write("[include]\n\tpath = b.inc\n")
        with open(b, "w") as f:
            f.write("[include]\n\tpath = .gitconfig\n")

        plan = self.make_plan()
        add_git_config_mounts(plan, self.home)
        self.assertEqual([s.source for s in plan.read_only], [a, b])


class TestAgentAndCacheMounts(DiscoveryTestCase):
    """Test cases for agent state and language caches."""

    def test_agent_dirs_are_created(self):
        """Test that missing agent state directories are created and bound rw."""
        plan = self.make_plan()
        add_agent_state_mounts(plan, self.home)

        for entry in ("/.config/opencode", "/.claude", "/.local/share/claude"):
            self.assertTrue(os.path.isdir(self.home + entry))
        sources = [s.source for s in plan.read_write]
        self.assertIn(os.path.join(self.home, ".cache", "claude"), sources)
        self.assertNotIn(os.path.join(self.home, ".claude.json"), sources)

    def test_caches_are_not_created(self):
        """Test that only existing caches are bound."""
        cargo = os.path.join(self.home, ".cargo")
        os.makedirs(cargo)

        plan = self.make_plan()
        add_language_cache_mounts(plan, self.home)

        self.assertEqual([s.source for s in plan.read_write], [self.project, cargo])
        self.assertFalse(os.path.exists(os.path.join(self.home, ".npm")))


class TestCredentialMounts(DiscoveryTestCase):
    """Test cases for SSH material."""

    def setUp(self):
        """Create agent and personal keys."""
        super().setUp()
        self.ssh = os.path.join(self.home, ".ssh")
        self.agent_key = self.touch(self.ssh, "agent-github")
        self.agent_pub = self.touch(self.ssh, "agent-github.pub")
        self.personal_key = self.touch(self.ssh, "id_ed25519")
        self.agent_config = self.touch(self.ssh, "config.agent")

    @patch("agent_sandbox.sandbox.discovery.emit_warning")
    def test_only_agent_keys_by_default(self, mock_warning):
        """Test that personal keys are never exposed by default."""
        plan = self.make_plan()
        add_credential_mounts(plan, self.make_config())

        sources = [s.source for s in plan.read_only]
        self.assertIn(self.agent_key, sources)
        self.assertIn(self.agent_pub, sources)
        self.assertNotIn(self.personal_key, sources)
        self.assertNotIn(self.ssh, sources)
        mock_warning.assert_not_called()

    @patch("agent_sandbox.sandbox.discovery.emit_warning")
    def test_agent_config_remapped_on_linux(self, mock_warning):
        """Test that config.agent stands in for ~/.ssh/config."""
        plan = self.make_plan()
        add_credential_mounts(plan, self.make_config())

        remaps = [s for s in plan.read_only if s.is_remap]
        self.assertEqual(len(remaps), 1)
        self.assertEqual(remaps[0].source, self.agent_config)
        self.assertEqual(remaps[0].destination, os.path.join(self.ssh, "config"))

    @patch("agent_sandbox.sandbox.discovery.emit_warning")
    def test_macos_uses_git_ssh_command(self, mock_warning):
        """Test the macOS replacement for remapping."""
        plan = self.make_plan(BackendKind.MACOS_MAC_POLICY)
        add_credential_mounts(plan, self.make_config())

        self.assertFalse(any(s.is_remap for s in plan.mounts()))
        self.assertEqual(
            plan.environment["GIT_SSH_COMMAND"], f"ssh -F {self.agent_config}"
        )

    @patch("agent_sandbox.sandbox.discovery.emit_warning")
    def test_full_ssh_override_warns(self, mock_warning):
        """Test that exposing ~/.ssh prints a warning."""
        plan = self.make_plan()
        add_credential_mounts(plan, self.make_config(AGENT_SANDBOX_SSH="true"))

        self.assertEqual(plan.read_only[0].source, self.ssh)
        self.assertFalse(any(s.is_remap for s in plan.mounts()))
        mock_warning.assert_called_once()
        self.assertIn("AGENT_SANDBOX_SSH", mock_warning.call_args[0][0])

    @patch("agent_sandbox.sandbox.discovery.emit_warning")
    def test_bound_home_falls_back_to_git_ssh_command(self, mock_warning):
        """Test that the agent config stays in effect when home is bound."""
        config = self.make_config(AGENT_SANDBOX_BIND_HOME="true")
        plan = self.make_plan()
        add_home_override(plan, config)
        add_credential_mounts(plan, config)

        self.assertFalse(any(s.is_remap for s in plan.mounts()))
        self.assertEqual(
            plan.environment["GIT_SSH_COMMAND"], f"ssh -F {self.agent_config}"
        )

    @patch("agent_sandbox.sandbox.discovery.emit_warning")
    def test_remap_rendered_after_read_write_binds(self, mock_warning):
        """Test that a later ancestor bind cannot hide the agent config."""
        plan = self.make_plan()
        add_credential_mounts(plan, self.make_config())
        plan.add_path(self.home, MountMode.READ_WRITE)

        argv = BubblewrapIsolator(bwrap_path="bwrap").render(plan, ["ssh"]).argv
        personal = os.path.join(self.ssh, "config")
        self.assertGreater(argv.index(personal), argv.index(self.home))

    @patch("agent_sandbox.sandbox.discovery.emit_warning")
    def test_warning_paths_are_escaped(self, mock_warning):
        """Test that bracketed paths survive console markup."""
        config = SandboxConfig(
            environ={"AGENT_SANDBOX_SSH": "1"}, home="/home/[/x]", cwd=self.project
        )
        add_credential_mounts(self.make_plan(), config)
        self.assertIn("\\[/x]", mock_warning.call_args[0][0])


class TestSystemMounts(DiscoveryTestCase):
    """Test cases for trust roots and name resolution files."""

    def test_absent_entries_are_skipped(self):
        """Test best-effort binding of system files."""
        hosts = self.touch(self.root, "etc", "hosts")
        ssl = os.path.join(self.root, "etc", "ssl")
        os.makedirs(ssl)
        missing = os.path.join(self.root, "etc", "pki")

        plan = self.make_plan()
        add_system_mounts(plan, [ssl, missing, hosts])

        self.assertEqual([s.source for s in plan.read_only], [ssl, hosts])

    def test_default_entries_are_read_only_and_present(self):
        """Test the built-in list against the real host."""
        plan = self.make_plan()
        add_system_mounts(plan)
        for spec in plan.read_only:
            self.assertIn(spec.source, discovery.TRUST_AND_RESOLVER_PATHS)
            self.assertTrue(os.path.lexists(spec.source))
        self.assertEqual(len(plan.read_write), 1)


class TestLinkerMounts(DiscoveryTestCase):
    """Test cases for dynamic linker search directories."""

    def setUp(self):
        """Write a fake ld.so.conf tree."""
        super().setUp()
        self.etc = os.path.join(self.root, "etc")
        conf_d = os.path.join(self.etc, "ld.so.conf.d")
        os.makedirs(conf_d)
        self.ld_so_conf = os.path.join(self.etc, "ld.so.conf")
        with open(self.ld_so_conf, "w") as f:
            f.write(
                "# system libraries\n"
                "/opt/vendor/lib  # trailing comment\n"
                "\n"
                "include ld.so.conf.d/*.conf\n"
                "relative/lib\n"
            )
        with open(os.path.join(conf_d, "b.conf"), "w") as f:
            f.write("/usr/lib/b\n")
        with open(os.path.join(conf_d, "a.conf"), "w") as f:
            f.write("/usr/lib/a\ninclude ../ld.so.conf\n")
        with open(os.path.join(conf_d, "ignored.txt"), "w") as f:
            f.write("/usr/lib/ignored\n")

    def test_ld_so_conf_includes_and_comments(self):
        """Test glob includes, relative includes, comments and cycles."""
        dirs = linker_search_dirs({}, ld_so_conf=self.ld_so_conf)
        self.assertEqual(dirs[: len(discovery.LINKER_DIRS)], discovery.LINKER_DIRS)
        self.assertEqual(
            dirs[len(discovery.LINKER_DIRS) :],
            ["/opt/vendor/lib", "/usr/lib/a", "/usr/lib/b"],
        )

    def test_missing_ld_so_conf(self):
        """Test that a host without ld.so.conf uses the defaults."""
        dirs = linker_search_dirs({}, ld_so_conf=os.path.join(self.etc, "absent"))
        self.assertEqual(dirs, discovery.LINKER_DIRS)

    def test_library_path_is_split(self):
        """Test LD_LIBRARY_PATH handling."""
        environ = {"LD_LIBRARY_PATH": "/x/lib::relative/lib:/y/lib"}
        dirs = linker_search_dirs(environ, ld_so_conf=os.path.join(self.etc, "absent"))
        self.assertEqual(dirs[-2:], ["/x/lib", "/y/lib"])

    def test_home_entries_are_excluded(self):
        """Test that library directories under home are not bound."""
        home_lib = os.path.join(self.home, ".local", "lib")
        other_lib = os.path.join(self.root, "vendor", "lib")
        os.makedirs(home_lib)
        os.makedirs(other_lib)

        plan = self.make_plan()
        add_linker_mounts(
            plan,
            {"LD_LIBRARY_PATH": os.pathsep.join([home_lib, other_lib])},
            self.home,
            ld_so_conf=os.path.join(self.etc, "absent"),
        )

        sources = [s.source for s in plan.read_only]
        self.assertIn(other_lib, sources)
        self.assertNotIn(home_lib, sources)


class TestExecutableMounts(DiscoveryTestCase):
    """Test cases for search path directories."""

    def test_home_and_store_entries_are_excluded(self):
        """Test PATH filtering."""
        tools = os.path.join(self.root, "tools", "bin")
        home_bin = os.path.join(self.home, ".local", "bin")
        os.makedirs(tools)
        os.makedirs(home_bin)
        search_path = os.pathsep.join(
            [tools, home_bin, "/nix/store/abc-git/bin", "relative/bin", "", tools]
        )

        plan = self.make_plan()
        with patch.object(discovery, "STORE_ROOT", os.path.join(self.root, "nix")):
            add_executable_mounts(plan, search_path, self.home)

        self.assertEqual([s.source for s in plan.read_only], [tools])


class TestDiscoverMounts(DiscoveryTestCase):
    """End-to-end discovery."""

    @patch("agent_sandbox.sandbox.discovery.emit_warning")
    def test_bind_home_override(self, mock_warning):
        """Test that the home override covers everything beneath it."""
        plan = SandboxPlan(backend=BackendKind.LINUX_NAMESPACE, working_directory=self.project)
        config = self.make_config(AGENT_SANDBOX_BIND_HOME="true")
        discover_mounts(plan, config, runner=_fake_git("", "", returncode=128))

        sources = [s.source for s in plan.read_write]
        self.assertEqual(sources[:2], [self.project, self.home])
        self.assertFalse(any(s.startswith(self.home + os.sep) for s in sources))
        mock_warning.assert_called_once()

    def test_project_root_first_and_extras_last(self):
        """Test ordering and extra path handling."""
        extra_ro = os.path.join(self.root, "docs")
        extra_rw = os.path.join(self.root, "out")
        os.makedirs(extra_ro)
        os.makedirs(extra_rw)
        config = self.make_config(
            AGENT_SANDBOX_RO_PATHS=f"{extra_ro}:{self.root}/absent",
            BWRAP_EXTRA_PATHS=extra_rw,
        )
        plan = SandboxPlan(backend=BackendKind.LINUX_NAMESPACE, working_directory=self.project)
        discover_mounts(plan, config, runner=_fake_git("", "", returncode=128))

        self.assertEqual(plan.read_write[0].source, self.project)
        self.assertTrue(plan.read_write[0].required)
        self.assertEqual(plan.read_write[-1].source, extra_rw)
        self.assertEqual(plan.read_only[-1].source, extra_ro)
        self.assertNotIn(f"{self.root}/absent", [s.source for s in plan.mounts()])

    def test_no_duplicate_sources_per_mode(self):
        """Test that discovery never emits the same mount twice."""
        config = self.make_config(AGENT_SANDBOX_RW_PATHS=self.project)
        plan = SandboxPlan(backend=BackendKind.LINUX_NAMESPACE, working_directory=self.project)
        discover_mounts(plan, config, runner=_fake_git("", "", returncode=128))

        keys = [(s.source, s.destination, s.mode) for s in plan.mounts()]
        self.assertEqual(len(keys), len(set(keys)))


if __name__ == "__main__":
    unittest.main()
