import json
import tempfile
import unittest
from pathlib import Path
from typing import Sequence

from skillhub.local_skills import (
    CommandOutput,
    LocalSkillsService,
    SkillsCommandError,
    candidate_lock_paths,
    hydrate_sources_from_lock,
    parse_skills_list_output,
    parse_skills_lock,
)
from skillhub.retry import RetryError
from skillhub.sync_core import DEFAULT_SKILL_SOURCE, SkillRecord


def rec(name: str, source: str = "org/repo") -> SkillRecord:
    return SkillRecord(source=source, name=name)


class FakeRunner:
    def __init__(self, outputs: dict[str, CommandOutput] | None = None, fail: dict[str, Exception] | None = None) -> None:
        self.outputs = dict(outputs or {})
        self.fail = dict(fail or {})
        self.calls: list[list[str]] = []

    def __call__(self, args: Sequence[str]) -> CommandOutput:
        self.calls.append(list(args))
        key = " ".join(args)
        if key in self.fail:
            raise self.fail[key]
        return self.outputs.get(key, CommandOutput(stdout="", stderr=""))


LIST_OUTPUT = "\n".join(
    [
        "\x1b[1mGlobal Skills\x1b[0m",
        "",
        "building-native-ui ~/.agents/skills/building-native-ui",
        "  Agents: Claude Code",
        "web-design-guidelines ~/.agents/skills/web-design-guidelines",
        "  Agents: Claude Code",
    ]
)


class TestParsing(unittest.TestCase):
    def test_parse_list_output(self) -> None:
        self.assertEqual(
            parse_skills_list_output(LIST_OUTPUT),
            [rec("building-native-ui", DEFAULT_SKILL_SOURCE), rec("web-design-guidelines", DEFAULT_SKILL_SOURCE)],
        )

    def test_parse_list_output_skips_paths_and_diagnostics(self) -> None:
        out = parse_skills_list_output("~/.agents/skills\nNo project skills found\n/abs/path thing\nalpha")
        self.assertEqual(out, [rec("alpha", DEFAULT_SKILL_SOURCE)])

    def test_parse_lock_object_map(self) -> None:
        raw = json.dumps({"version": 3, "skills": {"b": {"source": "expo/skills"}, "a": {"repo": "x/y"}, "c": True}})
        self.assertEqual(
            parse_skills_lock(raw),
            [rec("b", "expo/skills"), rec("a", "x/y"), rec("c", DEFAULT_SKILL_SOURCE)],
        )

    def test_parse_lock_list_shapes(self) -> None:
        raw = json.dumps({"skills": ["plain", {"skill": "named", "repo": "o/r"}, {"name": "n", "source": "s/t"}]})
        self.assertEqual(
            parse_skills_lock(raw),
            [rec("plain", DEFAULT_SKILL_SOURCE), rec("named", "o/r"), rec("n", "s/t")],
        )
        self.assertEqual(parse_skills_lock('["x"]'), [rec("x", DEFAULT_SKILL_SOURCE)])
        self.assertEqual(
            parse_skills_lock(json.dumps({"installedSkills": [{"name": "i", "source": "a/b"}]})),
            [rec("i", "a/b")],
        )
        self.assertEqual(parse_skills_lock('{"other": 1}'), [])

    def test_parse_lock_invalid_json(self) -> None:
        with self.assertRaises(ValueError):
            parse_skills_lock("{broken")

    def test_hydrate_prefers_valid_source(self) -> None:
        listed = [rec("alpha", DEFAULT_SKILL_SOURCE), rec("beta", DEFAULT_SKILL_SOURCE)]
        lock = [rec("alpha", "not valid"), rec("alpha", "acme/alpha")]
        self.assertEqual(
            hydrate_sources_from_lock(listed, lock),
            [rec("alpha", "acme/alpha"), rec("beta", DEFAULT_SKILL_SOURCE)],
        )

    def test_candidate_lock_paths(self) -> None:
        paths = candidate_lock_paths(cwd=Path("/work"), home=Path("/home/u"), env={"APPDATA": "/appdata"})
        self.assertEqual(paths[0], Path("/work/skills-lock.json"))
        self.assertIn(Path("/home/u/.agents/.skill-lock.json"), paths)
        self.assertIn(Path("/appdata/skills/skills-lock.json"), paths)
        self.assertEqual(len(paths), len(set(paths)))

    def test_candidate_lock_paths_dedupes(self) -> None:
        paths = candidate_lock_paths(cwd=Path("/home/u"), home=Path("/home/u"), env={})
        self.assertEqual(len(paths), len(set(paths)))
        self.assertEqual(paths.count(Path("/home/u/skills-lock.json")), 1)


class TestListLocalSkills(unittest.TestCase):
    def test_hydrates_from_lock_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lock = Path(td) / ".skill-lock.json"
            lock.write_text(
                json.dumps(
                    {
                        "version": 3,
                        "skills": {
                            "building-native-ui": {"source": "expo/skills"},
                            "web-design-guidelines": {"source": "vercel-labs/agent-skills"},
                        },
                    }
                ),
                encoding="utf-8",
            )
            runner = FakeRunner({"list -g": CommandOutput(stdout=LIST_OUTPUT, stderr="")})
            svc = LocalSkillsService(runner=runner, lock_paths=[Path(td) / "missing.json", lock])

            skills = svc.list_local_skills()

        self.assertEqual(
            skills,
            [rec("building-native-ui", "expo/skills"), rec("web-design-guidelines", "vercel-labs/agent-skills")],
        )

    def test_no_skills_marker_returns_empty(self) -> None:
        runner = FakeRunner({"list -g": CommandOutput(stdout="No global skills found.", stderr="")})
        svc = LocalSkillsService(runner=runner, lock_paths=[])
        self.assertEqual(svc.list_local_skills(), [])

    def test_lock_only_fallback(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lock = Path(td) / "skills-lock.json"
            lock.write_text(json.dumps({"skills": [{"name": "a", "source": "o/r"}]}), encoding="utf-8")
            svc = LocalSkillsService(runner=FakeRunner(), lock_paths=[lock])
            self.assertEqual(svc.list_local_skills(), [rec("a", "o/r")])

    def test_nothing_found_raises_with_searched_paths(self) -> None:
        svc = LocalSkillsService(runner=FakeRunner(), lock_paths=[Path("/nowhere/skills-lock.json")])
        with self.assertRaises(SkillsCommandError) as ctx:
            svc.list_local_skills()
        self.assertIn("/nowhere/skills-lock.json", str(ctx.exception))

    def test_list_command_failure(self) -> None:
        runner = FakeRunner(fail={"list -g": SkillsCommandError("npx exploded")})
        svc = LocalSkillsService(runner=runner, lock_paths=[])
        with self.assertRaises(RetryError):
            svc.list_local_skills()


class TestInstallRemove(unittest.TestCase):
    def test_install_validates_source_and_runs_add(self) -> None:
        runner = FakeRunner()
        svc = LocalSkillsService(runner=runner, lock_paths=[])

        result = svc.install_skills([rec("alpha"), rec("broken", "nope")])

        self.assertEqual(runner.calls, [["add", "org/repo", "--skill", "alpha", "--global", "--yes"]])
        self.assertEqual(result.succeeded, (rec("alpha"),))
        self.assertEqual(len(result.failed), 1)
        self.assertIn("Invalid source", result.failed[0].reason)

    def test_install_retries_transient_failure(self) -> None:
        attempts = {"n": 0}

        def runner(args: Sequence[str]) -> CommandOutput:
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise SkillsCommandError("network unreachable")
            return CommandOutput(stdout="done", stderr="")

        svc = LocalSkillsService(runner=runner, lock_paths=[], sleep=lambda _s: None)
        result = svc.install_skills([rec("alpha")])

        self.assertEqual(attempts["n"], 2)
        self.assertEqual(result.succeeded, (rec("alpha"),))

    def test_remove_dedupes(self) -> None:
        runner = FakeRunner()
        svc = LocalSkillsService(runner=runner, lock_paths=[])

        result = svc.remove_skills([rec("alpha"), rec("alpha")])

        self.assertEqual(runner.calls, [["remove", "--skill", "alpha", "--global", "--yes"]])
        self.assertEqual(result.succeeded, (rec("alpha"),))
        self.assertEqual(result.failed, ())

    def test_remove_collects_failures(self) -> None:
        runner = FakeRunner(fail={"remove --skill alpha --global --yes": SkillsCommandError("remove failed")})
        svc = LocalSkillsService(runner=runner, lock_paths=[])

        result = svc.remove_skills([rec("alpha")])

        self.assertEqual(result.succeeded, ())
        self.assertEqual(result.failed[0].skill, rec("alpha"))
        self.assertIn("remove failed", result.failed[0].reason)


if __name__ == "__main__":
    unittest.main()
