import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from gskills.cli import _merge_cfg, build_parser, main
from gskills.config import Config, apply_env
from gskills.errors import InvalidInputError

from fakes import FakeGitHub

URL = "https://github.com/acme/skills/tree/main/pdf"
TREE = {"pdf/SKILL.md": b"# pdf\n", "pdf/scripts/run.py": b"print()\n"}


class _CliCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)
        self.home = self.root / "home"
        self.client = FakeGitHub(TREE, revision="sha1")
        patches = [
            patch("gskills.cli.load_config", return_value=Config()),
            patch("gskills.cli._client_from_cfg", side_effect=lambda cfg, logger: self.client),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)
        self.addCleanup(self._td.cleanup)

    def run_cli(self, *argv: str) -> tuple[int, str, str]:
        out, err = io.StringIO(), io.StringIO()
        with patch("sys.stdout", new=out), patch("sys.stderr", new=err):
            rc = main([*argv, "--home", str(self.home)])
        return rc, out.getvalue(), err.getvalue()


class TestLifecycle(_CliCase):
    def test_add_list_info(self) -> None:
        rc, out, _ = self.run_cli("add", URL)
        self.assertEqual(rc, 0)
        self.assertIn("Installed pdf (sha1)", out)
        self.assertTrue((self.home / "skills" / "pdf" / "SKILL.md").is_file())

        rc, out, _ = self.run_cli("list", "--json")
        self.assertEqual(rc, 0)
        payload = json.loads(out)
        self.assertEqual([r["name"] for r in payload], ["pdf"])
        self.assertEqual(payload[0]["store_path"], str(self.home / "skills" / "pdf"))

        rc, out, _ = self.run_cli("ls")
        self.assertEqual(rc, 0)
        self.assertIn("NAME", out)
        self.assertIn("pdf", out)

        rc, out, _ = self.run_cli("info", "pdf")
        self.assertEqual(rc, 0)
        self.assertIn("id: acme/skills/pdf@main", out)
        self.assertIn("linked_projects: none", out)

    def test_link_unlink_tidy(self) -> None:
        self.run_cli("add", URL)
        project = self.root / "app"
        project.mkdir()

        rc, out, _ = self.run_cli("link", "pdf", str(project))
        self.assertEqual(rc, 0)
        self.assertTrue((project / ".opencode" / "skills" / "pdf").is_symlink())

        rc, out, _ = self.run_cli("link", "pdf", str(project))
        self.assertEqual(rc, 1)

        rc, out, _ = self.run_cli("tidy")
        self.assertEqual(rc, 0)
        self.assertIn("stale_registry_entries", out)

        rc, out, _ = self.run_cli("unlink", "pdf", str(project))
        self.assertEqual(rc, 0)
        self.assertFalse(os.path.lexists(project / ".opencode" / "skills" / "pdf"))

    def test_update_check_and_apply(self) -> None:
        self.run_cli("add", URL)

        rc, out, _ = self.run_cli("update", "--check")
        self.assertEqual(rc, 0)
        self.assertIn("All skills are up to date.", out)

        self.client.revision = "sha2"
        rc, out, _ = self.run_cli("update", "--check")
        self.assertEqual(rc, 0)
        self.assertIn("available", out)

        rc, out, _ = self.run_cli("update")
        self.assertEqual(rc, 0)
        self.assertIn("updated: 1", out)

        rc, out, _ = self.run_cli("list", "--json")
        self.assertEqual(json.loads(out)[0]["revision"], "sha2")

    def test_remove_with_yes(self) -> None:
        self.run_cli("add", URL)
        rc, out, _ = self.run_cli("remove", "pdf", "-y")
        self.assertEqual(rc, 0)
        self.assertIn("Removed pdf", out)
        self.assertFalse((self.home / "skills" / "pdf").exists())

    def test_remove_stays_offline(self) -> None:
        self.run_cli("add", URL)
        with patch("gskills.cli._client_from_cfg", side_effect=AssertionError("no client for remove")):
            rc, out, _ = self.run_cli("remove", "pdf", "-y")
        self.assertEqual(rc, 0)
        self.assertIn("Removed pdf", out)

    def test_remove_declined_on_eof(self) -> None:
        self.run_cli("add", URL)
        with patch("builtins.input", side_effect=EOFError):
            rc, out, _ = self.run_cli("remove", "pdf")
        self.assertEqual(rc, 0)
        self.assertIn("Removal cancelled.", out)
        self.assertTrue((self.home / "skills" / "pdf").exists())

    def test_errors_exit_1_with_subject(self) -> None:
        rc, out, err = self.run_cli("remove", "nope", "-y")
        self.assertEqual(rc, 1)
        self.assertIn("error [nope]:", err)

        rc, _, err = self.run_cli("add", "https://github.com/acme/skills")
        self.assertEqual(rc, 1)
        self.assertIn("Branch must be specified", err)

    def test_migrate(self) -> None:
        rc, out, _ = self.run_cli("migrate")
        self.assertEqual(rc, 0)
        self.assertIn("Migrated 0 legacy link entries.", out)


class TestConfig(unittest.TestCase):
    def test_set_show_path(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg_path = Path(td) / "config.json"
            with patch.dict(os.environ, {"GSKILLS_CONFIG_PATH": str(cfg_path)}):
                with patch("sys.stdout", new=io.StringIO()):
                    self.assertEqual(main(["config", "set", "--github-token", "ghp_1234567890abcdef", "--timeout-s", "5"]), 0)

                out = io.StringIO()
                with patch("sys.stdout", new=out):
                    self.assertEqual(main(["config", "show"]), 0)
                shown = json.loads(out.getvalue())
                self.assertEqual(shown["github_token"], "ghp_12...cdef")
                self.assertEqual(shown["timeout_s"], 5.0)

                out = io.StringIO()
                with patch("sys.stdout", new=out):
                    self.assertEqual(main(["config", "path"]), 0)
                self.assertEqual(out.getvalue().strip(), str(cfg_path))

            self.assertEqual(json.loads(cfg_path.read_text(encoding="utf-8"))["github_token"], "ghp_1234567890abcdef")

    def test_cli_flags_override_env_and_file(self) -> None:
        args = build_parser().parse_args(["list", "--token", "flag-token", "--home", "/tmp/gs"])
        base = Config(github_token="file-token", proxy="http://file:1")
        with patch.dict(os.environ, {"GSKILLS_GITHUB_TOKEN": "env-token", "GSKILLS_PROXY": "http://env:2"}):
            cfg = _merge_cfg(base, args)
        self.assertEqual(cfg.github_token, "flag-token")
        self.assertEqual(cfg.proxy, "http://env:2")
        self.assertEqual(cfg.home_dir, "/tmp/gs")
        self.assertEqual(cfg.registry_path, Path("/tmp/gs") / "skills.json")

    def test_invalid_timeout_env_is_rejected(self) -> None:
        with patch.dict(os.environ, {"GSKILLS_TIMEOUT_S": "soon"}):
            with self.assertRaises(InvalidInputError):
                apply_env(Config())

            err = io.StringIO()
            with patch("gskills.cli.load_config", return_value=Config()), patch("sys.stderr", new=err):
                self.assertEqual(main(["list", "--home", "/tmp/gs"]), 1)
            self.assertIn("GSKILLS_TIMEOUT_S", err.getvalue())

        with patch.dict(os.environ, {"GSKILLS_TIMEOUT_S": "2.5"}):
            self.assertEqual(apply_env(Config()).timeout_s, 2.5)

    def test_global_flags_before_subcommand(self) -> None:
        args = build_parser().parse_args(["-y", "--home", "/tmp/gs", "remove", "pdf"])
        self.assertTrue(args.yes)
        self.assertEqual(args.home, "/tmp/gs")


if __name__ == "__main__":
    unittest.main()
