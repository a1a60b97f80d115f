"""Tests for dockyard.deploy.builders."""

import shlex

import pytest

from dockyard.core.errors import ValidationError
from dockyard.deploy.builders import (
    BuildContext,
    clone_commands,
    helper_cleanup_command,
    in_helper,
    plan_build,
)
from dockyard.deploy.models import Application, BuildPack, DeploymentRecord


def _context(*, commit="abc123", force=False, content=None, **app_fields):
    deployment = DeploymentRecord(uuid="dep-1", commit=commit, force_rebuild=force)
    application = Application(uuid="app-1", git_repository="https://git.example.com/shop.git", **app_fields)
    return BuildContext(deployment, application, helper="dep-1", dockerfile_content=content)


class TestBuildContext:
    def test_paths_with_base_directory(self):
        ctx = _context(base_directory="/backend", dockerfile_location="/backend/Dockerfile")
        assert ctx.workdir == "/artifacts/dep-1"
        assert ctx.context_dir == "/artifacts/dep-1/backend"
        assert ctx.dockerfile_path == "/artifacts/dep-1/backend/Dockerfile"
        assert ctx.image == "app-1:abc123"

    def test_root_base_directory(self):
        ctx = _context()
        assert ctx.context_dir == "/artifacts/dep-1"
        assert ctx.dockerfile_path == "/artifacts/dep-1/Dockerfile"


class TestHelperCommands:
    def test_in_helper_preserves_command(self):
        argv = shlex.split(in_helper("dep-1", "echo 'hello world'"))
        assert argv == ["docker", "exec", "dep-1", "bash", "-c", "echo 'hello world'"]

    def test_cleanup_never_fails(self):
        assert helper_cleanup_command("dep-1").endswith("|| true")


class TestCloneCommands:
    def test_requires_repository(self):
        ctx = _context()
        ctx.application.git_repository = ""
        with pytest.raises(ValidationError):
            clone_commands(ctx)

    def test_head_is_single_clone(self):
        commands = clone_commands(_context(commit="HEAD"))
        assert commands == ["git clone --depth 1 -b main https://git.example.com/shop.git /artifacts/dep-1"]

    def test_specific_commit_is_checked_out(self):
        commands = clone_commands(_context(commit="abc123"))
        assert len(commands) == 2
        assert commands[1].endswith("git checkout abc123")


class TestPlans:
    def test_dockerfile_targets_named_final_stage(self):
        content = "FROM node:20 AS build\nRUN npm ci\nFROM nginx:alpine AS runtime\n"
        plan = plan_build(_context(build_pack=BuildPack.DOCKERFILE, content=content))
        assert plan.image == "app-1:abc123"
        (command,) = plan.commands
        assert command.startswith("docker image inspect app-1:abc123 >/dev/null 2>&1 || docker build --target runtime")
        assert "--build-arg SOURCE_COMMIT=abc123" in command

    def test_single_stage_dockerfile_has_no_target(self):
        content = "FROM python:3.12-slim AS app\nCMD python app.py\n"
        plan = plan_build(_context(build_pack=BuildPack.DOCKERFILE, content=content))
        assert "--target" not in plan.commands[0]

    def test_force_rebuild_skips_cache_and_presence_check(self):
        plan = plan_build(_context(build_pack=BuildPack.DOCKERFILE, force=True))
        assert plan.commands[0].startswith("docker build --no-cache -f /artifacts/dep-1/Dockerfile")

    def test_dockercompose(self):
        plan = plan_build(_context(build_pack=BuildPack.DOCKERCOMPOSE, docker_compose_location="/compose.yml"))
        assert plan.image is None
        assert plan.compose_file == "/artifacts/dep-1/compose.yml"
        assert plan.commands == ["docker compose --project-name app-1 -f /artifacts/dep-1/compose.yml build"]

    def test_dockerimage(self):
        plan = plan_build(_context(build_pack=BuildPack.DOCKERIMAGE, docker_image="nginx", docker_image_tag="1.27"))
        assert plan.image == "nginx:1.27"
        assert plan.commands == ["docker pull nginx:1.27"]

    def test_dockerimage_requires_image(self):
        with pytest.raises(ValidationError):
            plan_build(_context(build_pack=BuildPack.DOCKERIMAGE))

    def test_static(self):
        plan = plan_build(_context(build_pack=BuildPack.STATIC, static_publish_directory="/dist"))
        assert "COPY ./dist /usr/share/nginx/html" in plan.commands[0]
        assert "-f /artifacts/dep-1/Dockerfile.dockyard-static" in plan.commands[1]

    def test_nixpacks(self):
        plan = plan_build(_context())
        assert "nixpacks build /artifacts/dep-1 --name app-1:abc123" in plan.commands[0]

    def test_unknown_pack(self):
        with pytest.raises(ValidationError, match="Unsupported build pack"):
            plan_build(_context(build_pack="buildpacks-io"))
