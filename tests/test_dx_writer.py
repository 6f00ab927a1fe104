import json

from buildcrew.agents.dx_writer import DXWriterAgent, code_examples, flatten, parse_sections, reading_time, slugify
from buildcrew.models import ArtifactType, TaskKind

from conftest import FakeBackend, make_agent, make_router, make_task, prompt_of

SECTION_BODY = "Short intro. It is simple.\n\n```bash\npip install demo\n```"


def test_writes_requested_sections(tools, tmp_path):
    def responder(request):
        if prompt_of(request).startswith('Write the "'):
            return SECTION_BODY
        return json.dumps({"doc_type": "api", "sections": ["Overview", "Usage"]})

    router = make_router(FakeBackend(responder=responder))
    agent = make_agent(DXWriterAgent, router, tools, "dx-writer", ["file-write"])

    result = agent.execute(make_task(TaskKind.DOCUMENTATION, "document the api"))

    assert result.success, result.errors
    document = result.output["document"]
    assert document["path"] == "docs/API.md"
    assert (tmp_path / "docs" / "API.md").read_text() == document["content"]
    assert [s["title"] for s in _flatten_dump(result.output["sections"])] == ["API Reference", "Overview", "Usage"]
    assert len(result.output["code_examples"]) == 2
    assert result.output["quality"]["overall"] == 1.0
    assert result.artifacts[0].type == ArtifactType.FILE


def _flatten_dump(sections):
    out = []
    for s in sections:
        out.append(s)
        out.extend(_flatten_dump(s["subsections"]))
    return out


def test_fallback_readme_without_examples_still_passes(router, tools, tmp_path):
    agent = make_agent(DXWriterAgent, router, tools, "dx-writer")
    result = agent.execute(make_task(TaskKind.DOCUMENTATION, "write a readme"))

    assert result.success
    assert result.output["document"]["path"] == "README.md"
    assert result.output["quality"]["examples"] == 0.0
    assert result.output["quality"]["completeness"] == 1.0
    assert result.output["applications"] == []
    assert not (tmp_path / "README.md").exists()


def test_unreadable_document_is_rejected(tools):
    def responder(request):
        if prompt_of(request).startswith('Write the "'):
            return " ".join(["word"] * 100)
        return "nope"

    agent = make_agent(DXWriterAgent, make_router(FakeBackend(responder=responder)), tools, "dx-writer")
    result = agent.execute(make_task(TaskKind.DOCUMENTATION, "write a readme"))

    assert not result.success
    assert result.errors[0].startswith("Documentation quality")


def test_parse_sections_ignores_headings_in_code():
    markdown = "# Title\nintro\n## Setup\n```bash\n# not a heading\n```\n### Detail\ntext\n## Usage\n"
    roots = parse_sections(markdown)
    assert [s.title for s in flatten(roots)] == ["Title", "Setup", "Detail", "Usage"]
    assert [s.title for s in roots[0].subsections] == ["Setup", "Usage"]
    assert "# not a heading" in roots[0].subsections[0].content
    assert code_examples(markdown)[0].language == "bash"


def test_small_helpers():
    assert reading_time("") == 1
    assert reading_time("word " * 401) == 3
    assert slugify("Getting Started!") == "getting-started"
