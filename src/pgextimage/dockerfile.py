"""Render a build plan as a multi-stage Dockerfile.

The builder stage compiles every extension into the staging root; the final
stage starts again from the clean base image, installs runtime libraries only,
merges the staging root into ``/`` and enables preloading.
"""

from __future__ import annotations

import json
import shlex

from pgextimage import internal_config
from pgextimage.assembly import format_preload_directive
from pgextimage.models import BuildPlan, ExtensionRecipe
from pgextimage.recipes import substitute_step

DOCKERFILE_SHELL = '["/bin/bash", "-o", "pipefail", "-c"]'
_RULE = "# " + "-" * 80
_CONTINUATION = " && \\\n    "


def _banner(title: str) -> str:
    return f"{_RULE}\n# {title}\n{_RULE}"


def _apt_install(packages: tuple[str, ...]) -> str:
    lines = [
        "RUN apt-get update && apt-get install -y --no-install-recommends \\",
        *(f"    {package} \\" for package in packages),
        "    && rm -rf /var/lib/apt/lists/*",
    ]
    return "\n".join(lines)


def render_build_arg_url(recipe: ExtensionRecipe) -> str:
    return recipe.url_template.format(version=f"${{{recipe.build_arg}}}")


def render_extension_run(recipe: ExtensionRecipe, plan: BuildPlan) -> str:
    archive = recipe.archive_name()
    commands = [
        f'wget -O {archive} "{render_build_arg_url(recipe)}"',
    ]
    checksum = plan.checksums.get(recipe.name, "")
    if checksum:
        commands.append(f'echo "{checksum}  {archive}" | sha256sum -c -')
    commands.extend(
        [
            f"mkdir {recipe.name}",
            f"tar -xzf {archive} -C {recipe.name} --strip-components=1",
            f"cd {recipe.name}",
        ]
    )

    current_subdir = ""
    for step in (*recipe.build_steps, recipe.install_step):
        if step.subdir != current_subdir:
            commands.append(f"cd {step.subdir}")
            current_subdir = step.subdir
        argv = substitute_step(step, destdir=plan.staging_root, jobs="$(nproc)")
        # $(nproc) must reach the shell unquoted
        commands.append(
            " ".join(arg if "$(" in arg else shlex.quote(arg) for arg in argv)
        )
    return "RUN " + _CONTINUATION.join(commands)


def render_builder_stage(plan: BuildPlan) -> str:
    sections = [
        _banner("STAGE 1: Builder"),
        f"FROM {plan.base_image} AS {internal_config.BUILDER_STAGE_NAME}",
        f"SHELL {DOCKERFILE_SHELL}",
        _banner("VERSION PINS"),
        "\n".join(
            f"ARG {recipe.build_arg}={plan.version_of(recipe.name)}"
            for recipe in plan.recipes
        ),
        _banner("Build Dependencies"),
        _apt_install(plan.build_packages),
        f"WORKDIR {plan.source_dir}\nRUN mkdir -p {plan.staging_root}",
    ]
    for index, recipe in enumerate(plan.recipes, start=1):
        sections.append(_banner(f"Extension {index}: {recipe.name}"))
        sections.append(render_extension_run(recipe, plan))
    return "\n\n".join(sections)


def render_final_stage(plan: BuildPlan) -> str:
    directive = format_preload_directive(plan.preload_libraries)
    sections = [
        _banner("STAGE 2: Final Image"),
        f"FROM {plan.base_image}",
        "# Runtime shared libraries required by the compiled extensions",
        _apt_install(plan.runtime_packages),
        "# Merge the staging root into the image filesystem",
        f"COPY --from={internal_config.BUILDER_STAGE_NAME} {plan.staging_root} /",
        "# Libraries that must be loaded at server start",
        f'RUN echo "{directive}" >> {internal_config.CONF_SAMPLE_PATH}',
        f"CMD {json.dumps(internal_config.DEFAULT_COMMAND)}",
    ]
    return "\n\n".join(sections)


def render_dockerfile(plan: BuildPlan) -> str:
    return f"{render_builder_stage(plan)}\n\n\n{render_final_stage(plan)}\n"
