"""Tests for the role agents."""

import json

import pytest

from storyloop.agents import (
    AGENT_CLASSES,
    AgentResult,
    CodeReviewerAgent,
    DeveloperAgent,
    EpicStoryAgent,
    FileGeneratorAgent,
    IssueResolverAgent,
    ManifestBuilderAgent,
    PackagerAgent,
    RequirementAnalyzerAgent,
    ScrumMasterAgent,
    TesterAgent,
    VerifierAgent,
)
from storyloop.agents.scoring import is_passing, scenario_score
from storyloop.agents.steps import MANIFEST_FILE
from storyloop.errors import MalformedResponseError, MissingPreconditionError
from storyloop.models import Failure, Phase, RoleId, Task, TaskStatus, TestResult, TestScope
from storyloop.records import DeveloperOutput, GeneratedFile, RequirementsOutput, StepOutput
from storyloop.retry import RetryExecutor

HIGH_UI = {"severity": "high", "category": "ui", "scenario": "Form never submits"}
MEDIUM_API = {"severity": "medium", "category": "api", "scenario": "Wrong status code"}


@pytest.fixture
def make_agent(config, store, fake_generator):
    def _make(agent_class):
        return agent_class(config, store, generator=fake_generator, retry=RetryExecutor(max_attempts=1))
    return _make


@pytest.fixture
def signup_task():
    return Task(id="task-1-1-1", title="Signup form", description="Render and submit", epic_ordinal=1, story_ordinal=1, task_order=1)


@pytest.fixture
def developed(write_record):
    """Record completed developer output: await developed(task_id, {path: content})."""
    async def _developed(task_id, files):
        return await write_record("notes", RoleId.DEVELOPER, DeveloperOutput(
            task_id=task_id,
            files=[GeneratedFile(path, content) for path, content in files.items()],
        ))
    return _developed


class TestScoring:

    def test_no_scenarios_scores_full_marks(self):
        assert scenario_score([], []) == 100

    def test_penalties_per_severity(self):
        medium = Failure.from_dict(MEDIUM_API)
        assert scenario_score(["a", "b", "c"], [medium]) == 67
        low = Failure(severity="low", category="ui", scenario="typo")
        assert scenario_score(["a"], [low]) == 47

    def test_clamped_at_zero(self):
        high = Failure.from_dict(HIGH_UI)
        assert scenario_score([], [high, high]) == 0

    def test_high_severity_always_fails(self):
        high = Failure.from_dict(HIGH_UI)
        assert not is_passing(100, 70, [high])
        assert is_passing(70, 70, [Failure.from_dict(MEDIUM_API)])
        assert not is_passing(69, 70, [])


class TestAgentResult:

    def test_to_dict(self):
        result = AgentResult.failure_result("rejected", StepOutput(reason="x"))
        assert result.to_dict() == {
            "success": False,
            "output": {"skipped": False, "reason": "x", "details": {}},
            "errors": ["rejected"],
        }
        assert AgentResult.success_result().to_dict()["output"] is None

    def test_every_work_role_has_an_agent(self):
        assert set(AGENT_CLASSES) == set(RoleId) - {RoleId.PIPELINE_CONTROL}
        for role_id, agent_class in AGENT_CLASSES.items():
            assert agent_class.role_id == role_id


class TestAnalysisAgents:

    @pytest.mark.asyncio
    async def test_requirements_options(self, fenced, make_agent, fake_generator):
        fake_generator.queue(fenced({"options": [
            {"title": "Minimal", "content": "# Notes\nSign up, write notes."},
            {"title": "Full", "content": "# Notes\nPlus sharing."},
        ]}))
        result = await make_agent(RequirementAnalyzerAgent).run({
            "project_id": "notes", "title": "Notes", "document": "A notes app", "selected": 5,
        })

        assert result.success
        assert len(result.output.options) == 2
        assert result.output.selected == 1
        assert "A notes app" in fake_generator.prompts[0]

    @pytest.mark.asyncio
    async def test_requirements_need_a_document(self, make_agent, fake_generator):
        with pytest.raises(MissingPreconditionError):
            await make_agent(RequirementAnalyzerAgent).run({"project_id": "notes", "document": "  "})
        assert fake_generator.calls == 0

    @pytest.mark.asyncio
    async def test_requirements_option_without_content(self, fenced, make_agent, fake_generator):
        fake_generator.queue(fenced({"options": [{"title": "Empty"}]}))
        with pytest.raises(MalformedResponseError, match="no content"):
            await make_agent(RequirementAnalyzerAgent).run({"project_id": "notes", "document": "doc"})

    @pytest.mark.asyncio
    async def test_decomposition(self, fenced, make_agent, fake_generator, write_record, requirements, catalog):
        await write_record("notes", RoleId.REQUIREMENT_ANALYZER, RequirementsOutput(options=[requirements]))
        fake_generator.queue(fenced(catalog.to_dict()))

        result = await make_agent(EpicStoryAgent).run({"project_id": "notes"})

        assert result.output.catalog.coordinates() == [(1, 1), (1, 2), (2, 1)]
        assert "Users sign up and keep notes." in fake_generator.prompts[0]

    @pytest.mark.asyncio
    async def test_decomposition_needs_requirements(self, make_agent):
        with pytest.raises(MissingPreconditionError, match="requirements"):
            await make_agent(EpicStoryAgent).run({"project_id": "notes"})

    @pytest.mark.asyncio
    async def test_epic_without_stories_is_malformed(self, fenced, make_agent, fake_generator, seed_project):
        await seed_project()
        fake_generator.queue(fenced({
            "epics": [{"id": "e1", "title": "One"}, {"id": "e2", "title": "Two"}],
            "stories": [{"id": "s1", "epic_id": "e1", "title": "Only story"}],
        }))
        with pytest.raises(MalformedResponseError, match="e2 has no stories"):
            await make_agent(EpicStoryAgent).run({"project_id": "notes"})


class TestScrumMasterAgent:

    @pytest.mark.asyncio
    async def test_fresh_project(self, make_agent, fake_generator, seed_project, task_list_text):
        await seed_project()
        fake_generator.queue(task_list_text("Form", "Endpoint"))

        result = await make_agent(ScrumMasterAgent).run({"project_id": "notes"})

        assert result.success
        assert result.output.current_phase == Phase.TASK_CREATION
        assert [t.id for t in result.output.tasks] == ["task-1-1-1", "task-1-1-2"]

    @pytest.mark.asyncio
    async def test_missing_catalog(self, make_agent):
        with pytest.raises(MissingPreconditionError, match="catalog"):
            await make_agent(ScrumMasterAgent).run({"project_id": "notes"})

    def test_engine_uses_configured_window(self, make_agent, config):
        config.development.history_window = 12
        assert make_agent(ScrumMasterAgent).engine.window == 12


class TestDevelopmentAgents:

    @pytest.mark.asyncio
    async def test_developer_returns_files_and_moves_task_to_review(
        self, fenced, make_agent, fake_generator, config, signup_task, requirements, catalog,
    ):
        (config.workspace_path / "app").mkdir(parents=True)
        (config.workspace_path / "app" / "db.py").write_text("DB = {}\n")
        fake_generator.queue(fenced({
            "files": [{"path": "app/signup.py", "content": "def signup(): ...\n"}],
            "notes": "form handler",
        }))

        result = await make_agent(DeveloperAgent).run({
            "project_id": "notes", "task": signup_task, "requirements": requirements, "catalog": catalog,
        })

        assert [f.path for f in result.output.files] == ["app/signup.py"]
        assert result.output.notes == "form handler"
        assert result.output.task_updates[0].status == TaskStatus.REVIEWING
        prompt = fake_generator.prompts[0]
        assert "- app/db.py" in prompt
        assert "As a visitor I can sign up" in prompt

    @pytest.mark.asyncio
    async def test_developer_rejects_unsafe_paths(self, fenced, make_agent, fake_generator, signup_task, requirements):
        fake_generator.queue(fenced({"files": [{"path": "../escape.py", "content": ""}]}))
        with pytest.raises(MalformedResponseError, match="invalid file entry"):
            await make_agent(DeveloperAgent).run({
                "project_id": "notes", "task": signup_task, "requirements": requirements,
            })

    @pytest.mark.asyncio
    async def test_file_generator_writes_latest_output(self, make_agent, config, signup_task, developed):
        await developed("task-1-1-1", {"app/signup.py": "v1\n"})
        await developed("task-1-1-1", {"app/signup.py": "v2\n", "app/__init__.py": ""})

        result = await make_agent(FileGeneratorAgent).run({"project_id": "notes", "task": signup_task})

        assert sorted(result.output.written) == ["app/__init__.py", "app/signup.py"]
        assert (config.workspace_path / "app" / "signup.py").read_text() == "v2\n"

    @pytest.mark.asyncio
    async def test_file_generator_needs_developer_output(self, make_agent, signup_task):
        with pytest.raises(MissingPreconditionError):
            await make_agent(FileGeneratorAgent).run({"project_id": "notes", "task": signup_task})


class TestCodeReviewerAgent:

    @pytest.mark.asyncio
    async def test_pass_moves_task_to_testing(self, fenced, make_agent, fake_generator, signup_task, developed):
        await developed("task-1-1-1", {"app/signup.py": "def signup(): ...\n"})
        fake_generator.queue(fenced({"score": 85, "summary": "Looks fine", "failures": []}))

        result = await make_agent(CodeReviewerAgent).run({"project_id": "notes", "task": signup_task})

        assert result.success
        assert result.output.passed
        assert result.output.task_updates[0].status == TaskStatus.TESTING
        assert "def signup(): ..." in fake_generator.prompts[0]

    @pytest.mark.asyncio
    async def test_rejection_carries_failures(self, fenced, make_agent, fake_generator, signup_task, developed):
        await developed("task-1-1-1", {"app/signup.py": "pass\n"})
        fake_generator.queue(fenced({"score": 90, "failures": [HIGH_UI, MEDIUM_API]}))

        result = await make_agent(CodeReviewerAgent).run({"project_id": "notes", "task": signup_task})

        assert not result.success
        assert not result.output.passed
        assert [f.category.value for f in result.output.failures] == ["ui", "api"]
        assert result.output.task_updates[0].status == TaskStatus.FAILED
        assert "task-1-1-1" in result.errors[0]

    @pytest.mark.asyncio
    async def test_score_out_of_range_is_malformed(self, fenced, make_agent, fake_generator, signup_task, developed):
        await developed("task-1-1-1", {"a.py": ""})
        fake_generator.queue(fenced({"score": 140}))
        with pytest.raises(MalformedResponseError, match="out of range"):
            await make_agent(CodeReviewerAgent).run({"project_id": "notes", "task": signup_task})

    @pytest.mark.asyncio
    async def test_nothing_to_review(self, make_agent, signup_task):
        with pytest.raises(MissingPreconditionError):
            await make_agent(CodeReviewerAgent).run({"project_id": "notes", "task": signup_task})


class TestTesterAgent:

    @pytest.mark.asyncio
    async def test_story_pass_completes_task(self, fenced, make_agent, fake_generator, signup_task, developed):
        await developed("task-1-1-1", {"app/signup.py": "ok"})
        fake_generator.queue(fenced({"successes": ["renders", "submits", "validates"], "failures": []}))

        result = await make_agent(TesterAgent).run({"project_id": "notes", "task": signup_task})

        assert result.success
        assert result.output.test_type == TestScope.STORY
        assert result.output.overall_score == 100
        assert result.output.task_id == "task-1-1-1"
        assert result.output.task_updates[0].status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_story_failure_marks_task_failed(self, fenced, make_agent, fake_generator, signup_task, developed):
        await developed("task-1-1-1", {"app/signup.py": "ok"})
        fake_generator.queue(fenced({"successes": ["renders"], "failures": [MEDIUM_API]}))

        result = await make_agent(TesterAgent).run({"project_id": "notes", "task": signup_task})

        assert not result.success
        assert result.output.test_result == TestResult.FAIL
        assert result.output.overall_score == 42
        assert result.output.task_updates[0].status == TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_epic_scope_uses_only_that_epics_files(
        self, fenced, make_agent, fake_generator, developed, make_tasks, config,
    ):
        await developed("task-1-1-1", {"auth/signup.py": "signup"})
        await developed("task-2-1-1", {"notes/list.py": "notes"})
        tasks = make_tasks(1, 1, ["completed"]) + make_tasks(2, 1, ["completed"])
        config.scoring.epic = 80
        fake_generator.queue(fenced({"successes": ["a", "b", "c", "d"], "failures": [
            {"severity": "low", "category": "ui", "scenario": "Label typo"},
        ]}))

        result = await make_agent(TesterAgent).run({
            "project_id": "notes", "scope": TestScope.EPIC, "epic_ordinal": 1, "tasks": tasks,
        })

        prompt = fake_generator.prompts[0]
        assert "auth/signup.py" in prompt
        assert "notes/list.py" not in prompt
        assert result.output.epic_ordinal == 1
        assert result.output.overall_score == 77
        assert not result.success
        assert result.output.task_updates == []

    @pytest.mark.asyncio
    async def test_integration_scope_uses_every_file(self, fenced, make_agent, fake_generator, developed):
        await developed("task-1-1-1", {"auth/signup.py": "signup"})
        await developed("task-2-1-1", {"notes/list.py": "notes"})
        fake_generator.queue(fenced({"successes": ["end to end"]}))

        result = await make_agent(TesterAgent).run({"project_id": "notes", "scope": "integration"})

        assert result.success
        assert result.output.test_type == TestScope.INTEGRATION
        assert "auth/signup.py" in fake_generator.prompts[0]
        assert "notes/list.py" in fake_generator.prompts[0]

    @pytest.mark.asyncio
    async def test_nothing_to_test(self, make_agent):
        with pytest.raises(MissingPreconditionError, match="whole project"):
            await make_agent(TesterAgent).run({"project_id": "notes", "scope": TestScope.INTEGRATION})


class TestSteps:

    @pytest.fixture
    def deployable(self, config):
        config.deployment.target_repository = "git@example.com:notes.git"
        config.workspace_path.mkdir(parents=True)
        (config.workspace_path / "main.py").write_text("print('notes')\n")
        return config

    @pytest.mark.asyncio
    @pytest.mark.parametrize("agent_class", [ManifestBuilderAgent, PackagerAgent, VerifierAgent])
    async def test_skipped_without_target_repository(self, make_agent, agent_class):
        result = await make_agent(agent_class).run({"project_id": "notes"})
        assert result.success
        assert result.output.skipped
        assert "target repository" in result.output.reason

    @pytest.mark.asyncio
    async def test_skipped_without_command(self, make_agent, deployable):
        result = await make_agent(PackagerAgent).run({"project_id": "notes"})
        assert result.output.skipped
        assert result.output.reason == "no package_command configured"

    @pytest.mark.asyncio
    async def test_manifest_lists_workspace_files(self, make_agent, deployable):
        result = await make_agent(ManifestBuilderAgent).run({"project_id": "notes"})

        assert result.output.details["files"] == 1
        manifest = json.loads((deployable.workspace_path / MANIFEST_FILE).read_text())
        assert manifest["files"][0]["path"] == "main.py"
        assert len(manifest["files"][0]["sha256"]) == 64

    @pytest.mark.asyncio
    async def test_command_runs_in_workspace_with_project_env(self, make_agent, deployable):
        deployable.deployment.package_command = 'ls && echo "project=$STORYLOOP_PROJECT_ID"'

        result = await make_agent(PackagerAgent).run({"project_id": "notes"})

        assert result.success
        assert result.output.details["returncode"] == 0
        assert "main.py" in result.output.details["output"]
        assert "project=notes" in result.output.details["output"]

    @pytest.mark.asyncio
    async def test_failing_command(self, make_agent, deployable):
        deployable.deployment.verify_command = "echo unhealthy; exit 3"

        result = await make_agent(VerifierAgent).run({"project_id": "notes"})

        assert not result.success
        assert result.output.details["returncode"] == 3
        assert "exit code 3" in result.errors[0]

    @pytest.mark.asyncio
    async def test_command_timeout(self, make_agent, deployable):
        deployable.deployment.verify_command = "sleep 5"
        deployable.deployment.timeout_seconds = 0.1

        result = await make_agent(VerifierAgent).run({"project_id": "notes"})

        assert not result.success
        assert "timed out" in result.output.details["output"]


class TestIssueResolverAgent:

    @pytest.mark.asyncio
    async def test_diagnosis(self, fenced, make_agent, fake_generator):
        fake_generator.queue(fenced({"diagnosis": "Deploy key missing", "suggested_actions": "add key"}))

        result = await make_agent(IssueResolverAgent).run({
            "project_id": "notes",
            "failed_role": "deployer",
            "failed_record_id": "deployer-abc",
            "error": {"message": "exit 128"},
        })

        assert result.output.details == {
            "failed_role": "deployer",
            "failed_record_id": "deployer-abc",
            "diagnosis": "Deploy key missing",
            "suggested_actions": ["add key"],
        }
        assert "exit 128" in fake_generator.prompts[0]
