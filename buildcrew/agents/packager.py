"""
📦 Packager — Manifests & Release Artifacts

Writes the manifest for each requested package type (pyproject,
package.json, Dockerfile), checksums and sizes what it wrote, and
spells out how to install or deploy the result. Runs the build
command through shell-exec when one is given.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Literal

from pydantic import BaseModel, Field

from buildcrew.agents import AgentRun, BaseAgent, dominant_language
from buildcrew.models import Artifact, ArtifactType, TaskResult

PackageType = Literal["python", "npm", "docker"]


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class PackagingRequest(BaseModel):
    name: str
    version: str = "0.1.0"
    description: str = ""
    package_types: list[PackageType] = Field(min_length=1)
    build_command: str | None = None
    output_dir: str = "dist"
    dependencies: dict[str, str] = Field(default_factory=dict)
    scripts: dict[str, str] = Field(default_factory=dict)


class Manifest(BaseModel):
    package_type: PackageType
    path: str
    content: str
    size: int
    sha256: str


class DeploymentStep(BaseModel):
    order: int
    command: str
    description: str


class Deployment(BaseModel):
    platform: PackageType
    prerequisites: list[str]
    steps: list[DeploymentStep]


# ---------------------------------------------------------------------------
# Manifest rendering
# ---------------------------------------------------------------------------

def package_name(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:50] or "package"


def render_pyproject(request: PackagingRequest) -> str:
    deps = [f'    "{name}{spec if spec and spec != "*" else ""}",' for name, spec in request.dependencies.items()]
    scripts = [f'{name} = "{target}"' for name, target in request.scripts.items()]
    lines = [
        "[build-system]",
        'requires = ["setuptools>=68.0"]',
        'build-backend = "setuptools.build_meta"',
        "",
        "[project]",
        f'name = "{request.name}"',
        f'version = "{request.version}"',
        f'description = "{request.description}"',
        'requires-python = ">=3.10"',
        "dependencies = [",
        *deps,
        "]",
    ]
    if scripts:
        lines += ["", "[project.scripts]", *scripts]
    return "\n".join(lines) + "\n"


def render_package_json(request: PackagingRequest) -> str:
    manifest = {
        "name": request.name,
        "version": request.version,
        "description": request.description,
        "main": f"{request.output_dir}/index.js",
        "scripts": request.scripts,
        "dependencies": request.dependencies,
        "files": [f"{request.output_dir}/**/*"],
        "license": "MIT",
    }
    return json.dumps(manifest, indent=2) + "\n"


def render_dockerfile(request: PackagingRequest, base: Literal["python", "node"]) -> str:
    if base == "python":
        body = [
            "FROM python:3.12-slim",
            "WORKDIR /app",
            "COPY . .",
            "RUN pip install --no-cache-dir .",
        ]
        if request.build_command:
            body.append(f"RUN {request.build_command}")
        body.append(f'CMD ["python", "-m", "{request.name.replace("-", "_")}"]')
    else:
        body = [
            "FROM node:20-alpine",
            "WORKDIR /app",
            "COPY package*.json ./",
            "RUN npm ci --omit=dev",
            "COPY . .",
        ]
        if request.build_command:
            body.append(f"RUN {request.build_command}")
        body += ["EXPOSE 3000", 'CMD ["npm", "start"]']
    return f"# {request.name} {request.version}\n" + "\n".join(body) + "\n"


def deployment_for(manifest: Manifest, request: PackagingRequest) -> Deployment:
    if manifest.package_type == "python":
        return Deployment(platform="python", prerequisites=["Python 3.10+ and pip"], steps=[
            DeploymentStep(order=1, command="python -m build", description="Build sdist and wheel"),
            DeploymentStep(order=2, command=f"pip install {request.output_dir}/{request.name.replace('-', '_')}-{request.version}-py3-none-any.whl",
                           description="Install the wheel"),
        ])
    if manifest.package_type == "npm":
        return Deployment(platform="npm", prerequisites=["Node.js and npm"], steps=[
            DeploymentStep(order=1, command="npm pack", description="Create the tarball"),
            DeploymentStep(order=2, command=f"npm install {request.name}-{request.version}.tgz", description="Install the package"),
        ])
    image = f"{request.name}:{request.version}"
    return Deployment(platform="docker", prerequisites=["Docker installed and running"], steps=[
        DeploymentStep(order=1, command=f"docker build -t {image} .", description="Build the image"),
        DeploymentStep(order=2, command=f"docker run --rm {image}", description="Run the container"),
    ])


# ---------------------------------------------------------------------------
# Agent Implementation
# ---------------------------------------------------------------------------

class PackagerAgent(BaseAgent):
    system_prompt = """You are the release engineer of a build crew.

You decide how a project is packaged: which package types, what version,
which runtime dependencies.

You MUST respond with a valid JSON object ONLY. No markdown, no commentary.
"""

    def _fallback_request(self, run: AgentRun) -> PackagingRequest:
        paths = {f.path.rsplit("/", 1)[-1] for f in run.files}
        if "package.json" in paths:
            types: list[PackageType] = ["npm"]
        elif "pyproject.toml" in paths or dominant_language(run.files) == "python":
            types = ["python"]
        else:
            types = ["npm"]
        if "Dockerfile" in paths:
            types.append("docker")
        return PackagingRequest(
            name=package_name(run.task.description),
            description=run.task.description,
            package_types=types,
        )

    def _manifest(self, package_type: PackageType, request: PackagingRequest, node_project: bool) -> Manifest:
        if package_type == "python":
            path, content = "pyproject.toml", render_pyproject(request)
        elif package_type == "npm":
            path, content = "package.json", render_package_json(request)
        else:
            path, content = "Dockerfile", render_dockerfile(request, "node" if node_project else "python")
        data = content.encode("utf-8")
        return Manifest(
            package_type=package_type, path=path, content=content,
            size=len(data), sha256=hashlib.sha256(data).hexdigest(),
        )

    def on_execute(self, run: AgentRun) -> TaskResult:
        task = run.task
        request = self.request_or_fallback(
            run,
            f"""Task: {task.description}
Files: {', '.join(f.path for f in run.files) or 'none'}

Respond with JSON: {{"name": "...", "version": "0.1.0", "description": "...",
"package_types": ["python|npm|docker"], "build_command": null, "output_dir": "dist",
"dependencies": {{}}, "scripts": {{}}}}""",
            PackagingRequest,
            lambda: self._fallback_request(run),
        )
        request = request.model_copy(update={"name": package_name(request.name)})

        node_project = "npm" in request.package_types
        manifests = [self._manifest(t, request, node_project) for t in dict.fromkeys(request.package_types)]
        build_log: list[str] = []
        errors: list[str] = []

        run.report(40, "Writing manifests")
        for m in manifests:
            result = self.use_tool(run, "file-write", {"path": m.path, "content": m.content}, target=m.path)
            if result is None:
                build_log.append(f"Rendered {m.path} (not written)")
            elif result.success:
                build_log.append(f"Wrote {m.path} ({m.size} bytes)")
            else:
                errors.append(f"Failed to write {m.path}: {result.error}")

        if request.build_command:
            run.report(60, "Building")
            result = self.use_tool(run, "shell-exec", {"command": request.build_command}, target=request.build_command)
            if result is None:
                build_log.append(f"Skipped build: {request.build_command}")
            elif result.success:
                build_log.append(f"Build succeeded: {request.build_command}")
            else:
                build_log.append(f"Build failed: {result.error}")
                errors.append(f"Build command failed (exit {result.exit_code}): {result.stderr[-500:] or result.error}")

        total = sum(m.size for m in manifests)
        size_report = {
            "total_bytes": total,
            "files": [
                {"path": m.path, "bytes": m.size, "percentage": round(100.0 * m.size / total, 1) if total else 0.0}
                for m in manifests
            ],
        }
        checksums = {"algorithm": "sha256", "files": {m.path: m.sha256 for m in manifests}}
        deployments = [deployment_for(m, request) for m in manifests]

        output = {
            "request": request.model_dump(),
            "manifests": [m.model_dump() for m in manifests],
            "build_log": build_log,
            "size_report": size_report,
            "checksums": checksums,
            "deployment": [d.model_dump() for d in deployments],
            "applications": [a.model_dump() for a in run.applications],
            "degraded": run.degraded,
        }
        if errors:
            self.log.warning(f"[{self.tag}] Packaging failed: {errors}")
            return self.create_task_result(False, output=output, errors=errors)

        self.log.info(f"[{self.tag}] {request.name} {request.version}: {', '.join(request.package_types)}")
        return self.create_task_result(
            True,
            output=output,
            artifacts=[
                Artifact(
                    type=ArtifactType.DOCKER_IMAGE if m.package_type == "docker" else ArtifactType.PACKAGE,
                    path=m.path,
                    metadata={"package_type": m.package_type, "sha256": m.sha256, "bytes": m.size,
                              "version": request.version},
                )
                for m in manifests
            ],
        )
