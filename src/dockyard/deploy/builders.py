"""Build strategies, one per build pack.

Each strategy turns a :class:`BuildContext` into a :class:`BuildPlan`: the
commands to run inside the build helper container and the image (or
compose file) they produce.  Source checkout is separate
(:func:`clone_commands`, for the packs in ``SOURCE_BUILD_PACKS``) so the
Dockerfile can be read before the plan is made.  Strategies never touch
the network themselves.

Example::

    ctx = BuildContext(deployment, application, helper=deployment.uuid)
    run_all(executor, host, [in_helper(ctx.helper, c) for c in clone_commands(ctx)])
    plan = plan_build(ctx)
    for command in plan.commands:
        run_checked(executor, host, in_helper(plan.helper, command))
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from dockyard.core.errors import ValidationError
from dockyard.deploy.dockerfile import final_stage, is_multi_stage, normalize_dockerfile_location
from dockyard.deploy.models import Application, BuildPack, DeploymentRecord
from dockyard.remote.shell import quote

ARTIFACTS_ROOT = "/artifacts"

SOURCE_BUILD_PACKS = frozenset({
    BuildPack.DOCKERFILE,
    BuildPack.DOCKERCOMPOSE,
    BuildPack.STATIC,
    BuildPack.NIXPACKS,
})


@dataclass
class BuildContext:
    deployment: DeploymentRecord
    application: Application
    helper: str
    dockerfile_content: str | None = None

    @property
    def workdir(self) -> str:
        return f"{ARTIFACTS_ROOT}/{self.deployment.uuid}"

    @property
    def context_dir(self) -> str:
        base = (self.application.base_directory or "/").rstrip("/")
        return f"{self.workdir}{base}"

    @property
    def dockerfile_path(self) -> str:
        location = normalize_dockerfile_location(
            self.application.base_directory, self.application.dockerfile_location
        )
        return f"{self.context_dir}{location}"

    @property
    def image(self) -> str:
        return f"{self.application.uuid}:{self.deployment.commit}"


@dataclass
class BuildPlan:
    helper: str
    image: str | None
    commands: list[str] = field(default_factory=list)
    compose_file: str | None = None


def in_helper(helper: str, command: str) -> str:
    """Wrap *command* to run inside the build helper container."""
    return f"docker exec {quote(helper)} bash -c {quote(command)}"


def helper_start_command(helper: str, image: str) -> str:
    return (
        f"docker run -d --rm --name {quote(helper)} "
        "-v /var/run/docker.sock:/var/run/docker.sock "
        f"{quote(image)} sleep infinity"
    )


def helper_cleanup_command(helper: str) -> str:
    return f"docker rm -f {quote(helper)} >/dev/null 2>&1 || true"


def clone_commands(ctx: BuildContext) -> list[str]:
    app = ctx.application
    if not app.git_repository:
        raise ValidationError("Application has no git repository", field="git_repository")
    commands = [
        f"git clone --depth 1 -b {quote(app.git_branch)} {quote(app.git_repository)} {quote(ctx.workdir)}",
    ]
    if ctx.deployment.commit and ctx.deployment.commit != "HEAD":
        commands.append(
            f"cd {quote(ctx.workdir)} && git fetch --depth 1 origin {quote(ctx.deployment.commit)} "
            f"&& git checkout {quote(ctx.deployment.commit)}"
        )
    return commands


def _skip_if_present(image: str, command: str, force: bool) -> str:
    if force:
        return command
    return f"docker image inspect {quote(image)} >/dev/null 2>&1 || {command}"


def _cache_flag(ctx: BuildContext) -> str:
    return " --no-cache" if ctx.deployment.force_rebuild else ""


def plan_dockerfile(ctx: BuildContext) -> BuildPlan:
    target = ""
    if ctx.dockerfile_content and is_multi_stage(ctx.dockerfile_content):
        stage = final_stage(ctx.dockerfile_content)
        if stage is not None and stage.name:
            target = f" --target {quote(stage.name)}"

    build = (
        f"docker build{_cache_flag(ctx)}{target} -f {quote(ctx.dockerfile_path)} "
        f"--build-arg SOURCE_COMMIT={quote(ctx.deployment.commit)} "
        f"-t {quote(ctx.image)} {quote(ctx.context_dir)}"
    )
    return BuildPlan(
        helper=ctx.helper,
        image=ctx.image,
        commands=[_skip_if_present(ctx.image, build, ctx.deployment.force_rebuild)],
    )


def plan_dockercompose(ctx: BuildContext) -> BuildPlan:
    location = normalize_dockerfile_location(
        ctx.application.base_directory, ctx.application.docker_compose_location
    )
    compose_file = f"{ctx.context_dir}{location}"
    build = (
        f"docker compose --project-name {quote(ctx.application.uuid)} "
        f"-f {quote(compose_file)} build{_cache_flag(ctx)}"
    )
    return BuildPlan(
        helper=ctx.helper,
        image=None,
        commands=[build],
        compose_file=compose_file,
    )


def plan_dockerimage(ctx: BuildContext) -> BuildPlan:
    app = ctx.application
    if not app.docker_image:
        raise ValidationError("Application has no docker image", field="docker_image")
    image = f"{app.docker_image}:{app.docker_image_tag or 'latest'}"
    return BuildPlan(helper=ctx.helper, image=image, commands=[f"docker pull {quote(image)}"])


def plan_static(ctx: BuildContext) -> BuildPlan:
    publish = (ctx.application.static_publish_directory or "/").strip("/")
    source = f"./{publish}" if publish else "."
    dockerfile = f"{ctx.context_dir}/Dockerfile.dockyard-static"
    write = (
        f"printf '%s\\n' 'FROM nginx:alpine' {quote(f'COPY {source} /usr/share/nginx/html')} "
        f"> {quote(dockerfile)}"
    )
    build = (
        f"docker build{_cache_flag(ctx)} -f {quote(dockerfile)} "
        f"-t {quote(ctx.image)} {quote(ctx.context_dir)}"
    )
    return BuildPlan(
        helper=ctx.helper,
        image=ctx.image,
        commands=[write, _skip_if_present(ctx.image, build, ctx.deployment.force_rebuild)],
    )


def plan_nixpacks(ctx: BuildContext) -> BuildPlan:
    build = (
        f"nixpacks build {quote(ctx.context_dir)} --name {quote(ctx.image)}"
        f"{' --no-cache' if ctx.deployment.force_rebuild else ''}"
    )
    return BuildPlan(
        helper=ctx.helper,
        image=ctx.image,
        commands=[_skip_if_present(ctx.image, build, ctx.deployment.force_rebuild)],
    )


BUILD_STRATEGIES: dict[BuildPack, Callable[[BuildContext], BuildPlan]] = {
    BuildPack.DOCKERFILE: plan_dockerfile,
    BuildPack.DOCKERCOMPOSE: plan_dockercompose,
    BuildPack.DOCKERIMAGE: plan_dockerimage,
    BuildPack.STATIC: plan_static,
    BuildPack.NIXPACKS: plan_nixpacks,
}


def plan_build(ctx: BuildContext) -> BuildPlan:
    """Dispatch to the strategy of the application's build pack."""
    strategy = BUILD_STRATEGIES.get(ctx.application.build_pack)
    if strategy is None:
        raise ValidationError(
            f"Unsupported build pack: {ctx.application.build_pack}",
            field="build_pack",
            value=ctx.application.build_pack,
        )
    return strategy(ctx)


__all__ = [
    "ARTIFACTS_ROOT",
    "SOURCE_BUILD_PACKS",
    "BuildContext",
    "BuildPlan",
    "in_helper",
    "helper_start_command",
    "helper_cleanup_command",
    "clone_commands",
    "plan_dockerfile",
    "plan_dockercompose",
    "plan_dockerimage",
    "plan_static",
    "plan_nixpacks",
    "BUILD_STRATEGIES",
    "plan_build",
]
