import json

from buildcrew.agents.coder import CoderAgent, build_instructions, extension_for, unified_diff
from buildcrew.models import ArtifactType, TaskKind

from conftest import FakeBackend, make_agent, make_router, make_task, prompt_of

ORIGINAL = "def add(a, b):\n    return a - b\n"
FIXED = "def add(a, b):\n    return a + b\n"


def _responder(request):
    prompt = prompt_of(request)
    if "List only the dependencies" in prompt:
        return json.dumps({"dependencies": [{"name": "pydantic", "version": "2.5", "type": "runtime"}]})
    if prompt.startswith("Modify the existing file"):
        return f"```python\n{FIXED}```"
    if prompt.startswith("Create a new"):
        return "VALUE = 1\n"
    return json.dumps({
        "description": "fix add and add constants",
        "language": "python",
        "files": [{"path": "calc.py", "purpose": "fix the sign"}, {"path": "consts.py", "purpose": "constants"}],
    })


def test_coder_modifies_and_creates_files(tools, tmp_path):
    router = make_router(FakeBackend(responder=_responder))
    agent = make_agent(CoderAgent, router, tools, "coder", ["lint-runner", "file-write"])
    task = make_task(TaskKind.CODE_GENERATION, "fix add",
                     files=[{"path": "calc.py", "content": ORIGINAL, "language": "python"}])

    result = agent.execute(task)

    assert result.success, result.errors
    modified = result.output["modified_files"][0]
    assert modified["added"] == 1
    assert modified["removed"] == 1
    assert "+    return a + b" in modified["diff"]
    assert result.output["generated_files"][0]["path"] == "consts.py"
    assert result.output["dependencies"][0]["name"] == "pydantic"
    assert result.output["build_instructions"][0]["command"] == "pip install -e ."
    assert (tmp_path / "calc.py").read_text() == FIXED.rstrip("\n")
    assert (tmp_path / "consts.py").read_text() == "VALUE = 1"
    assert {a.path for a in result.artifacts} == {"calc.py", "consts.py"}
    assert all(a.type == ArtifactType.FILE for a in result.artifacts)


def test_coder_refuses_to_write_code_that_fails_lint(router, tools, tmp_path):
    # every reply is unparseable prose, so the fallback file is linted as python
    agent = make_agent(CoderAgent, router, tools, "coder", ["lint-runner", "file-write"])
    result = agent.execute(make_task(TaskKind.CODE_GENERATION, "add input validation helper"))

    assert not result.success
    assert result.output["generated_files"][0]["path"] == "add_input_validation_helper.py"
    assert any(e.startswith("Linting failed for add_input_validation_helper.py") for e in result.errors)
    assert not (tmp_path / "add_input_validation_helper.py").exists()
    assert result.output["degraded"] is True


def test_coder_without_tool_permissions_touches_nothing(router, tools, tmp_path):
    agent = make_agent(CoderAgent, router, tools, "coder")
    result = agent.execute(make_task(TaskKind.CODE_GENERATION, "add helper"))
    assert result.success
    assert result.output["applications"] == []
    assert not any(tmp_path.iterdir())


def test_helpers():
    diff, added, removed = unified_diff("a.txt", "one\ntwo\n", "one\nthree\nfour\n")
    assert (added, removed) == (2, 1)
    assert diff.startswith("--- a/a.txt")
    assert extension_for("python") == ".py"
    assert extension_for("cobol") == ".txt"
    assert [i.command for i in build_instructions("typescript", "react")] == ["npm install", "npm run build"]
    assert build_instructions("cobol", None) == []
