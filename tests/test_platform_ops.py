import base64
import json

import pytest

from hcforge.errors import RemoteCommandError
from hcforge.platform_ops import (
    DEFAULT_DOCKERFILE_PATH,
    DockerContainer,
    DockerfileTemplate,
    DockerImage,
    NixPackage,
    PlatformOps,
    build_docker_containers_command,
    build_docker_images_command,
    build_docker_setup_command,
    build_dockerfile_template,
    build_minikube_nodes_command,
    build_minikube_pods_command,
    build_minikube_setup_command,
    build_minikube_status_command,
    build_nix_packages_command,
    build_nix_setup_command,
    build_nix_store_usage_command,
    build_nix_version_command,
    normalize_nix_packages,
    parse_docker_containers,
    parse_docker_images,
    parse_dockerfile_template,
    parse_nix_packages,
    shell_single_quote,
)
from hcforge.types import SessionTarget

pytestmark = [pytest.mark.unit]


class TestDocker:
    def test_setup_without_dockerfile(self):
        script = build_docker_setup_command(install_docker=False)
        assert script.startswith("set -eu\n")
        assert "INSTALL_DOCKER=0" in script
        assert "exit 15" in script
        assert "DOCKERFILE_B64" not in script
        assert script.rstrip().endswith("docker --version")

    def test_setup_uploads_dockerfile_base64(self):
        content = "FROM alpine:3.20\r\nCMD [\"sh\"]\r\n"
        script = build_docker_setup_command(True, content)

        encoded = base64.b64encode(b'FROM alpine:3.20\nCMD ["sh"]\n').decode("ascii")
        assert f"DOCKERFILE_B64='{encoded}'" in script
        assert f"DOCKERFILE_TARGET_PATH='{DEFAULT_DOCKERFILE_PATH}'" in script
        assert "exit 19" in script

    def test_custom_dockerfile_path_is_quoted(self):
        script = build_docker_setup_command(True, "FROM x", "/srv/it's/Dockerfile")
        assert "DOCKERFILE_TARGET_PATH='/srv/it'\"'\"'s/Dockerfile'" in script

    def test_listing_commands(self):
        assert "docker images --format '{{json .}}'" in build_docker_images_command()
        assert "exit 20" in build_docker_images_command()
        assert "docker ps -a --format '{{json .}}'" in build_docker_containers_command()
        assert "exit 21" in build_docker_containers_command()

    def test_parse_images(self):
        stdout = "\n".join(
            [
                json.dumps({"Repository": "nginx", "Tag": "latest", "ID": "abc", "CreatedSince": "2 days ago", "Size": "187MB"}),
                "WARNING: not json",
                json.dumps({"Repository": "", "Tag": None, "ID": "def"}),
                "",
            ]
        )
        assert parse_docker_images(stdout) == [
            DockerImage("nginx", "latest", "abc", "2 days ago", "187MB"),
            DockerImage("<none>", "<none>", "def", "-", "-"),
        ]

    def test_parse_containers(self):
        stdout = "\n".join(
            [
                json.dumps({"Names": "web", "Image": "nginx", "Status": "Up 3 hours", "Ports": "0.0.0.0:80->80/tcp", "ID": "1"}),
                json.dumps({"Names": "job", "Image": "alpine", "State": "exited", "Ports": "", "ID": "2"}),
            ]
        )
        assert parse_docker_containers(stdout) == [
            DockerContainer("web", "nginx", "Up 3 hours", "0.0.0.0:80->80/tcp", "1"),
            DockerContainer("job", "alpine", "exited", "none", "2"),
        ]


class TestDockerfileTemplate:
    def test_render(self):
        text = build_dockerfile_template("python:3.12-slim", "/srv", 8080, "python -m http.server 8080")
        assert text.splitlines() == [
            "# Generated by HC Forge Platform Ops",
            "FROM python:3.12-slim",
            "WORKDIR /srv",
            "COPY . .",
            "EXPOSE 8080",
            'CMD ["python", "-m", "http.server", "8080"]',
        ]

    def test_render_defaults(self):
        text = build_dockerfile_template(" ", "", None, "")
        assert "FROM ubuntu:24.04" in text
        assert "EXPOSE" not in text
        assert text.endswith('CMD ["bash"]\n')

    def test_parse(self):
        content = """
# comment
FROM golang:1.22 AS build
FROM gcr.io/distroless/base
WORKDIR /app
EXPOSE 9000/tcp 9001
CMD ["/app/server"]
"""
        assert parse_dockerfile_template(content) == DockerfileTemplate(
            base_image="gcr.io/distroless/base",
            workdir="/app",
            expose_port="9000/tcp",
            start_command='["/app/server"]',
        )

    def test_parse_stage_alias_and_missing_fields(self):
        parsed = parse_dockerfile_template("from node:20 as deps\n")
        assert parsed.base_image == "node:20"
        assert parsed.workdir is None


class TestMinikube:
    def test_setup_clamps_resources(self):
        script = build_minikube_setup_command(cpus=500, memory_mb=12, profile="  ")
        assert "MINIKUBE_CPUS=64" in script
        assert "MINIKUBE_MEMORY_MB=1024" in script
        assert "PROFILE='hcforge'" in script
        assert "MINIKUBE_DRIVER='docker'" in script
        for code in (30, 31, 32, 33):
            assert f"exit {code}" in script

    def test_setup_none_driver_and_version(self):
        script = build_minikube_setup_command(driver="none", kubernetes_version="v1.30.0", auto_start=False)
        assert "MINIKUBE_DRIVER='none'" in script
        assert "MINIKUBE_K8S_VERSION='v1.30.0'" in script
        assert "MINIKUBE_AUTO_START=0" in script

    @pytest.mark.parametrize(
        ("builder", "code", "fragment"),
        [
            (build_minikube_status_command, 40, "minikube status"),
            (build_minikube_nodes_command, 41, "get nodes -o wide"),
            (build_minikube_pods_command, 42, "get pods -A -o wide"),
        ],
    )
    def test_inspection_commands(self, builder, code, fragment):
        script = builder("dev")
        assert "PROFILE='dev'" in script
        assert f"exit {code}" in script
        assert fragment in script


class TestNix:
    def test_normalize_packages(self):
        assert normalize_nix_packages("git, ripgrep\n  jq;rm -rf /") == ["git", "ripgrep", "jqrm", "-rf"]
        assert normalize_nix_packages(["python3", "nodejs_20"]) == ["python3", "nodejs_20"]
        assert normalize_nix_packages(None) == []
        assert len(normalize_nix_packages(" ".join(f"p{i}" for i in range(120)))) == 80

    def test_setup_command(self):
        script = build_nix_setup_command(install_nix=False, run_garbage_collect=True, packages="git jq")
        assert "NIX_INSTALL=0" in script
        assert "NIX_ENABLE_FLAKES=1" in script
        assert "NIX_RUN_GC=1" in script
        assert "NIX_PACKAGES='git jq'" in script
        assert "exit 50" in script
        assert "exit 51" in script

    @pytest.mark.parametrize(
        ("builder", "code"),
        [(build_nix_version_command, 52), (build_nix_packages_command, 53), (build_nix_store_usage_command, 54)],
    )
    def test_inspection_commands(self, builder, code):
        script = builder()
        assert f"exit {code}" in script
        assert "nix-daemon.sh" in script

    def test_parse_profile_json(self):
        output = json.dumps(
            {
                "elements": [
                    {"attrPath": "legacyPackages.x86_64-linux.ripgrep", "originalUrl": "flake:nixpkgs", "storePaths": ["/nix/store/abc-ripgrep-14.1.0"]},
                    {"name": "hello", "locked": {"rev": "deadbeef"}},
                ]
            }
        )
        assert parse_nix_packages(output) == [
            NixPackage("ripgrep", "-", "flake:nixpkgs"),
            NixPackage("hello", "deadbeef", "nix profile"),
        ]

    def test_parse_profile_json_keyed_by_name(self):
        output = json.dumps({"jq": {"attrPath": "legacyPackages.x86_64-linux.jq", "url": "github:NixOS/nixpkgs"}})
        assert parse_nix_packages(output) == [NixPackage("jq", "-", "github:NixOS/nixpkgs")]

    def test_parse_nix_env_text(self):
        assert parse_nix_packages("git-2.47.0\nhello\n\n") == [
            NixPackage("git", "2.47.0", "nix-env"),
            NixPackage("hello", "-", "nix"),
        ]

    @pytest.mark.parametrize("output", ["", "nix is not installed.", "   "])
    def test_parse_nothing(self, output):
        assert parse_nix_packages(output) == []


def test_shell_single_quote():
    assert shell_single_quote("a'b") == "'a'\"'\"'b'"


class TestPlatformOps:
    TARGET = SessionTarget(resource_id="srv-1", host="203.0.113.10")

    @pytest.mark.asyncio
    async def test_docker_images_runs_one_shot(self, shell, sessions):
        shell.one_shot_lines = [json.dumps({"Repository": "redis", "Tag": "7", "ID": "r1"})]
        images = await PlatformOps(sessions).docker_images(self.TARGET, "pw")

        assert [i.repository for i in images] == ["redis"]
        assert shell.one_shots[0].command == build_docker_images_command()
        assert shell.one_shots[0].session_id.startswith("oneshot-")

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises(self, shell, sessions):
        shell.one_shot_exit = 20
        shell.one_shot_lines = ["Docker is not installed."]
        with pytest.raises(RemoteCommandError) as info:
            await PlatformOps(sessions).docker_containers(self.TARGET, "pw")
        assert info.value.exit_status == 20

    @pytest.mark.asyncio
    async def test_nix_packages(self, shell, sessions):
        shell.one_shot_lines = ["git-2.47.0"]
        assert await PlatformOps(sessions).nix_packages(self.TARGET, "pw") == [NixPackage("git", "2.47.0", "nix-env")]

    @pytest.mark.asyncio
    async def test_setup_docker(self, shell, sessions):
        shell.one_shot_lines = ["Docker version 26.1.0"]
        out = await PlatformOps(sessions).setup_docker(self.TARGET, "pw", dockerfile="FROM alpine")
        assert out == "Docker version 26.1.0"
        assert "DOCKERFILE_B64=" in shell.one_shots[0].command
