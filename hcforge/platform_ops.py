"""Docker, Minikube and Nix operations on a managed server.

Builders return self-contained POSIX shell scripts; parsers turn their
output into records. ``PlatformOps`` runs them as one-shot executions.

Exit codes used by the scripts:

    15-17  docker missing / cannot be installed
    18-19  Dockerfile upload failed
    20-21  docker missing for listing
    30-33  minikube prerequisites or install failed
    40-42  minikube missing for status / nodes / pods
    50-54  nix missing / cannot be installed
"""

from __future__ import annotations

import base64
import json
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Final, Literal, TypeAlias

from loguru import logger

from hcforge.session.manager import SessionManager
from hcforge.tasks.compose import Op, by_package_manager, fail, resolve, shell_quote, when
from hcforge.types import SessionTarget

DEFAULT_DOCKERFILE_PATH: Final = "/root/hcforge/docker/Dockerfile"
DEFAULT_MINIKUBE_PROFILE: Final = "hcforge"
MAX_NIX_PACKAGES: Final = 80
MISSING: Final = "-"

MinikubeDriver: TypeAlias = Literal["docker", "none"]

shell_single_quote = shell_quote


def _script(*ops: Op) -> str:
    return "\n".join(s for s in (resolve(op) for op in ("set -eu", *ops)) if s)


def _flag(value: bool) -> str:
    return "1" if value else "0"


def _clamp(value: Any, fallback: int, low: int, high: int) -> int:
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return fallback
    return max(low, min(high, number))


# =============================================================================
# Docker
# =============================================================================


def _install_docker(flag: str = "INSTALL_DOCKER") -> Op:
    return [
        when(
            "! command -v docker >/dev/null 2>&1",
            when(f'[ "${flag}" != "1" ]', fail("Docker is not installed and installation is disabled.", 15)),
            by_package_manager(
                {
                    "apt-get": [
                        "export DEBIAN_FRONTEND=noninteractive",
                        "apt-get update",
                        "apt-get install -y ca-certificates curl gnupg lsb-release docker.io",
                    ],
                    "dnf": "dnf -y install docker || dnf -y install moby-engine",
                    "yum": "yum -y install docker || yum -y install moby-engine",
                    "zypper": [
                        "zypper --non-interactive refresh",
                        "zypper --non-interactive install -y docker",
                    ],
                    "pacman": "pacman -Syu --noconfirm docker",
                    "apk": ["apk update", "apk add docker docker-cli containerd openrc"],
                },
                otherwise=fail("No supported package manager found to install Docker.", 16),
            ),
        ),
        when("command -v systemctl >/dev/null 2>&1", "systemctl enable --now docker || true"),
        when("command -v service >/dev/null 2>&1", "service docker start || true"),
        when("command -v rc-service >/dev/null 2>&1", "rc-service docker start || true"),
        when(
            "! command -v docker >/dev/null 2>&1",
            fail("Docker command is still unavailable after installation steps.", 17),
        ),
    ]


def _upload_dockerfile(content: str, target_path: str) -> Op:
    encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
    return [
        f"DOCKERFILE_TARGET_PATH={shell_quote(target_path)}",
        f"DOCKERFILE_B64={shell_quote(encoded)}",
        'mkdir -p "$(dirname "$DOCKERFILE_TARGET_PATH")"',
        when(
            "! command -v base64 >/dev/null 2>&1",
            fail("base64 command is required to upload Dockerfile content.", 18),
        ),
        """(printf '%s' "$DOCKERFILE_B64" | base64 -d > "$DOCKERFILE_TARGET_PATH" 2>/dev/null) \\
  || (printf '%s' "$DOCKERFILE_B64" | base64 --decode > "$DOCKERFILE_TARGET_PATH" 2>/dev/null) \\
  || {
  echo "Failed to decode Dockerfile content on target host."
  exit 19
}""",
        'chmod 600 "$DOCKERFILE_TARGET_PATH" || true',
        'echo "Dockerfile uploaded to $DOCKERFILE_TARGET_PATH"',
    ]


def build_docker_setup_command(
    install_docker: bool = True,
    dockerfile_content: str | None = None,
    dockerfile_target_path: str | None = None,
) -> str:
    """Ensure docker is present and optionally upload a Dockerfile."""
    content = (dockerfile_content or "").replace("\r\n", "\n")
    target = (dockerfile_target_path or "").strip() or DEFAULT_DOCKERFILE_PATH
    return _script(
        f"INSTALL_DOCKER={_flag(install_docker)}",
        _install_docker(),
        _upload_dockerfile(content, target) if content.strip() else None,
        "docker --version",
    )


def build_docker_images_command() -> str:
    return _script(
        'command -v docker >/dev/null 2>&1 || { echo "Docker is not installed."; exit 20; }',
        "docker images --format '{{json .}}'",
    )


def build_docker_containers_command() -> str:
    return _script(
        'command -v docker >/dev/null 2>&1 || { echo "Docker is not installed."; exit 21; }',
        "docker ps -a --format '{{json .}}'",
    )


@dataclass(frozen=True, slots=True)
class DockerImage:
    repository: str
    tag: str
    id: str
    created_since: str
    size: str


@dataclass(frozen=True, slots=True)
class DockerContainer:
    name: str
    image: str
    status: str
    ports: str
    id: str


def _json_lines(stdout: str) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            item = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(item, dict):
            items.append(item)
    return items


def _text(value: Any, fallback: str = MISSING) -> str:
    if value is None:
        return fallback
    return str(value).strip() or fallback


def parse_docker_images(stdout: str) -> list[DockerImage]:
    return [
        DockerImage(
            repository=_text(item.get("Repository"), "<none>"),
            tag=_text(item.get("Tag"), "<none>"),
            id=_text(item.get("ID")),
            created_since=_text(item.get("CreatedSince")),
            size=_text(item.get("Size")),
        )
        for item in _json_lines(stdout)
    ]


def parse_docker_containers(stdout: str) -> list[DockerContainer]:
    return [
        DockerContainer(
            name=_text(item.get("Names")),
            image=_text(item.get("Image")),
            status=_text(item.get("Status"), _text(item.get("State"))),
            ports=_text(item.get("Ports"), "none"),
            id=_text(item.get("ID")),
        )
        for item in _json_lines(stdout)
    ]


# =============================================================================
# Dockerfile template
# =============================================================================


@dataclass(frozen=True, slots=True)
class DockerfileTemplate:
    base_image: str | None = None
    workdir: str | None = None
    expose_port: str | None = None
    start_command: str | None = None


def build_dockerfile_template(
    base_image: str = "ubuntu:24.04",
    workdir: str = "/app",
    expose_port: str | int | None = None,
    start_command: str = '["bash"]',
) -> str:
    """Render a minimal Dockerfile.

    A ``start_command`` that is not already a JSON array is split on
    whitespace into exec form.
    """
    base_image = base_image.strip() or "ubuntu:24.04"
    workdir = workdir.strip() or "/app"
    port = str(expose_port).strip() if expose_port is not None else ""
    command = start_command.strip() or '["bash"]'
    if not (command.startswith("[") and command.endswith("]")):
        command = json.dumps(command.split() or ["bash"])

    lines = [
        "# Generated by HC Forge Platform Ops",
        f"FROM {base_image}",
        f"WORKDIR {workdir}",
        "COPY . .",
    ]
    if port:
        lines.append(f"EXPOSE {port}")
    lines.append(f"CMD {command}")
    return "\n".join(lines) + "\n"


_FROM = re.compile(r"^FROM\s+(.+)$", re.IGNORECASE)
_WORKDIR = re.compile(r"^WORKDIR\s+(.+)$", re.IGNORECASE)
_EXPOSE = re.compile(r"^EXPOSE\s+(.+)$", re.IGNORECASE)
_CMD = re.compile(r"^CMD\s+(.+)$", re.IGNORECASE)
_STAGE = re.compile(r"\s+AS\s+", re.IGNORECASE)


def parse_dockerfile_template(content: str) -> DockerfileTemplate:
    """Recover the template fields from a Dockerfile; the last occurrence wins."""
    fields: dict[str, str] = {}
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if m := _FROM.match(line):
            fields["base_image"] = _STAGE.split(m.group(1).strip())[0].strip()
        elif m := _WORKDIR.match(line):
            fields["workdir"] = m.group(1).strip()
        elif m := _EXPOSE.match(line):
            tokens = m.group(1).split()
            if tokens:
                fields["expose_port"] = tokens[0]
        elif m := _CMD.match(line):
            fields["start_command"] = m.group(1).strip()
    return DockerfileTemplate(**fields)


# =============================================================================
# Minikube
# =============================================================================


def _profile(profile: str | None) -> str:
    return (profile or "").strip() or DEFAULT_MINIKUBE_PROFILE


def build_minikube_setup_command(
    install_minikube: bool = True,
    ensure_docker: bool = True,
    auto_start: bool = True,
    profile: str | None = None,
    driver: MinikubeDriver = "docker",
    cpus: int = 2,
    memory_mb: int = 4096,
    kubernetes_version: str | None = None,
) -> str:
    driver = "none" if driver == "none" else "docker"
    return _script(
        f"PROFILE={shell_quote(_profile(profile))}",
        f"MINIKUBE_DRIVER={shell_quote(driver)}",
        f"MINIKUBE_CPUS={_clamp(cpus, 2, 1, 64)}",
        f"MINIKUBE_MEMORY_MB={_clamp(memory_mb, 4096, 1024, 262144)}",
        f"MINIKUBE_K8S_VERSION={shell_quote((kubernetes_version or '').strip())}",
        f"MINIKUBE_AUTO_START={_flag(auto_start)}",
        f"MINIKUBE_INSTALL={_flag(install_minikube)}",
        f"MINIKUBE_ENSURE_DOCKER={_flag(ensure_docker)}",
        when(
            "! command -v curl >/dev/null 2>&1",
            by_package_manager(
                {
                    "apt-get": ["export DEBIAN_FRONTEND=noninteractive", "apt-get update", "apt-get install -y curl"],
                    "dnf": "dnf -y install curl",
                    "yum": "yum -y install curl",
                    "zypper": ["zypper --non-interactive refresh", "zypper --non-interactive install -y curl"],
                    "pacman": "pacman -Syu --noconfirm curl",
                    "apk": ["apk update", "apk add curl"],
                },
                otherwise=fail("curl is required but no supported package manager is available.", 30),
            ),
        ),
        when(
            '[ "$MINIKUBE_DRIVER" = "docker" ] && [ "$MINIKUBE_ENSURE_DOCKER" = "1" ] && ! command -v docker >/dev/null 2>&1',
            "INSTALL_DOCKER=1",
            _install_docker(),
        ),
        when(
            '[ "$MINIKUBE_DRIVER" = "docker" ] && ! command -v docker >/dev/null 2>&1',
            fail("Docker driver selected but docker command is unavailable.", 31),
        ),
        when(
            "! command -v minikube >/dev/null 2>&1",
            when('[ "$MINIKUBE_INSTALL" != "1" ]', fail("Minikube is not installed and installation is disabled.", 32)),
            """ARCH="$(uname -m)"
case "$ARCH" in
  x86_64|amd64) BIN_ARCH="amd64" ;;
  aarch64|arm64) BIN_ARCH="arm64" ;;
  *)
    echo "Unsupported architecture for minikube: $ARCH"
    exit 33
    ;;
esac""",
            'curl -fsSL "https://storage.googleapis.com/minikube/releases/latest/minikube-linux-$BIN_ARCH" -o /usr/local/bin/minikube',
            "chmod +x /usr/local/bin/minikube",
            when(
                "! command -v kubectl >/dev/null 2>&1",
                'K8S_STABLE="$(curl -fsSL https://dl.k8s.io/release/stable.txt)"',
                'curl -fsSL "https://dl.k8s.io/release/$K8S_STABLE/bin/linux/$BIN_ARCH/kubectl" -o /usr/local/bin/kubectl',
                "chmod +x /usr/local/bin/kubectl",
            ),
        ),
        when(
            '[ "$MINIKUBE_AUTO_START" = "1" ]',
            'set -- start -p "$PROFILE" --driver="$MINIKUBE_DRIVER" --cpus="$MINIKUBE_CPUS" --memory="$MINIKUBE_MEMORY_MB"',
            when('[ -n "$MINIKUBE_K8S_VERSION" ]', 'set -- "$@" --kubernetes-version="$MINIKUBE_K8S_VERSION"'),
            'minikube "$@"',
        ),
        'minikube status -p "$PROFILE" --output=json || minikube status -p "$PROFILE" || true',
    )


def _minikube(profile: str | None, code: int, command: str) -> str:
    return _script(
        f"PROFILE={shell_quote(_profile(profile))}",
        f'command -v minikube >/dev/null 2>&1 || {{ echo "minikube is not installed."; exit {code}; }}',
        command,
    )


def build_minikube_status_command(profile: str | None = None) -> str:
    return _minikube(
        profile, 40, 'minikube status -p "$PROFILE" --output=json || minikube status -p "$PROFILE" || true'
    )


def build_minikube_nodes_command(profile: str | None = None) -> str:
    return _minikube(profile, 41, 'minikube kubectl -p "$PROFILE" -- get nodes -o wide')


def build_minikube_pods_command(profile: str | None = None) -> str:
    return _minikube(profile, 42, 'minikube kubectl -p "$PROFILE" -- get pods -A -o wide')


# =============================================================================
# Nix
# =============================================================================

_NIX_PATH = """\
if [ -f /nix/var/nix/profiles/default/etc/profile.d/nix-daemon.sh ]; then
  . /nix/var/nix/profiles/default/etc/profile.d/nix-daemon.sh
fi
if [ -f "$HOME/.nix-profile/etc/profile.d/nix.sh" ]; then
  . "$HOME/.nix-profile/etc/profile.d/nix.sh"
fi
export PATH="/nix/var/nix/profiles/default/bin:$HOME/.nix-profile/bin:$PATH"
"""

_NIX_ABSENT = "! command -v nix >/dev/null 2>&1 && ! command -v nix-env >/dev/null 2>&1"
_NIX_TOKEN = re.compile(r"[^A-Za-z0-9._+-]")
_NOT_INSTALLED = re.compile(r"^nix is not installed\.?$", re.IGNORECASE)
_VERSIONED = re.compile(r"^(.+)-([0-9][A-Za-z0-9.+-]*)$")


def normalize_nix_packages(value: str | Iterable[str] | None) -> list[str]:
    """Split on whitespace or commas, strip unsafe characters, keep at most 80."""
    if value is None:
        return []
    text = value if isinstance(value, str) else " ".join(value)
    tokens = (_NIX_TOKEN.sub("", t.strip()) for t in re.split(r"[\s,]+", text))
    return [t for t in tokens if t][:MAX_NIX_PACKAGES]


def build_nix_setup_command(
    install_nix: bool = True,
    enable_flakes: bool = True,
    run_garbage_collect: bool = False,
    packages: str | Iterable[str] | None = None,
) -> str:
    return _script(
        f"NIX_INSTALL={_flag(install_nix)}",
        f"NIX_ENABLE_FLAKES={_flag(enable_flakes)}",
        f"NIX_RUN_GC={_flag(run_garbage_collect)}",
        f"NIX_PACKAGES={shell_quote(' '.join(normalize_nix_packages(packages)))}",
        when(
            _NIX_ABSENT,
            when('[ "$NIX_INSTALL" != "1" ]', fail("Nix is not installed and installation is disabled.", 50)),
            # distro packages first, the upstream installer as fallback
            by_package_manager(
                {
                    "apt-get": [
                        "export DEBIAN_FRONTEND=noninteractive",
                        "(apt-get update && apt-get install -y nix-bin) || true",
                    ],
                    "dnf": "dnf -y install nix || true",
                    "yum": "yum -y install nix || true",
                    "zypper": "(zypper --non-interactive refresh && zypper --non-interactive install -y nix) || true",
                    "pacman": "pacman -Syu --noconfirm nix || true",
                    "apk": "(apk update && apk add nix) || true",
                },
                otherwise=":",
            ),
            by_package_manager(
                {
                    "apt-get": ["apt-get update", "apt-get install -y curl xz-utils"],
                    "dnf": "dnf -y install curl xz",
                    "yum": "yum -y install curl xz",
                    "zypper": ["zypper --non-interactive refresh", "zypper --non-interactive install -y curl xz"],
                    "pacman": "pacman -Syu --noconfirm curl xz",
                    "apk": ["apk update", "apk add curl xz"],
                },
                otherwise=":",
            ),
            when(
                _NIX_ABSENT,
                "curl -fsSL https://nixos.org/nix/install -o /tmp/hcforge-nix-install.sh",
                "sh /tmp/hcforge-nix-install.sh --no-daemon --yes",
            ),
        ),
        _NIX_PATH,
        when(_NIX_ABSENT, fail("nix command is unavailable after installation.", 51)),
        when(
            '[ "$NIX_ENABLE_FLAKES" = "1" ] && command -v nix >/dev/null 2>&1',
            "mkdir -p /etc/nix",
            "touch /etc/nix/nix.conf",
            """if grep -Eq '^[[:space:]]*experimental-features[[:space:]]*=' /etc/nix/nix.conf; then
  sed -i 's/^[[:space:]]*experimental-features[[:space:]]*=.*/experimental-features = nix-command flakes/' /etc/nix/nix.conf
else
  printf '\\nexperimental-features = nix-command flakes\\n' >> /etc/nix/nix.conf
fi""",
        ),
        when(
            '[ -n "$NIX_PACKAGES" ]',
            """if command -v nix-env >/dev/null 2>&1; then
  if command -v nix-channel >/dev/null 2>&1; then
    nix-channel --list | grep -q '^nixpkgs ' || nix-channel --add https://nixos.org/channels/nixpkgs-unstable nixpkgs
    nix-channel --update nixpkgs || true
  fi
  for package in $NIX_PACKAGES; do
    nix-env -iA "nixpkgs.$package"
  done
elif command -v nix >/dev/null 2>&1; then
  for package in $NIX_PACKAGES; do
    nix profile install --accept-flake-config "nixpkgs#$package"
  done
fi""",
        ),
        when(
            '[ "$NIX_RUN_GC" = "1" ]',
            """if command -v nix-collect-garbage >/dev/null 2>&1; then
  nix-collect-garbage -d || true
elif command -v nix >/dev/null 2>&1; then
  nix store gc || true
fi""",
        ),
        """if command -v nix >/dev/null 2>&1; then
  nix --version
elif command -v nix-env >/dev/null 2>&1; then
  nix-env --version
fi""",
    )


def build_nix_version_command() -> str:
    return _script(
        _NIX_PATH,
        """if command -v nix >/dev/null 2>&1; then
  nix --version
  nix show-config 2>/dev/null | grep -E '^experimental-features\\b' || true
elif command -v nix-env >/dev/null 2>&1; then
  nix-env --version
else
  echo "nix is not installed."
  exit 52
fi""",
    )


def build_nix_packages_command() -> str:
    return _script(
        _NIX_PATH,
        """if command -v nix >/dev/null 2>&1; then
  nix profile list --json 2>/dev/null || nix profile list 2>/dev/null || true
elif command -v nix-env >/dev/null 2>&1; then
  nix-env -q --installed
else
  echo "nix is not installed."
  exit 53
fi""",
    )


def build_nix_store_usage_command() -> str:
    return _script(
        _NIX_PATH,
        """if command -v nix-store >/dev/null 2>&1; then
  echo "Live store bytes:"
  nix-store --gc --print-live
  echo "Dead store bytes:"
  nix-store --gc --print-dead
  if [ -d /nix/store ] && command -v du >/dev/null 2>&1; then
    echo "Filesystem usage for /nix/store:"
    du -sh /nix/store 2>/dev/null || true
  fi
elif command -v nix >/dev/null 2>&1; then
  nix store info || true
else
  echo "nix is not installed."
  exit 54
fi""",
    )


@dataclass(frozen=True, slots=True)
class NixPackage:
    name: str
    version: str
    source: str


def _first(*values: Any) -> str:
    for value in values:
        text = str(value).strip() if value is not None else ""
        if text:
            return text
    return ""


def _from_profile(items: Iterable[Any]) -> list[NixPackage]:
    packages: list[NixPackage] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        attr_path = _first(item.get("attrPath"), item.get("name"), item.get("pname"))
        name = attr_path.rsplit(".", 1)[-1].strip() if "." in attr_path else attr_path
        locked = item.get("locked") if isinstance(item.get("locked"), dict) else {}
        store_paths = item.get("storePaths")
        packages.append(
            NixPackage(
                name=_first(name, attr_path, f"package-{index + 1}"),
                version=_first(
                    item.get("version"),
                    item.get("versionedName"),
                    locked.get("rev"),
                    locked.get("lastModified"),
                    MISSING,
                ),
                source=_first(
                    item.get("originalUrl"),
                    item.get("url"),
                    item.get("flake"),
                    store_paths[0] if isinstance(store_paths, list) and store_paths else "",
                    "nix profile",
                ),
            )
        )
    return packages


def parse_nix_packages(output: str) -> list[NixPackage]:
    """Parse ``nix profile list --json`` or ``nix-env -q`` output.

    Example:
        >>> parse_nix_packages("git-2.47.0")
        [NixPackage(name='git', version='2.47.0', source='nix-env')]
    """
    text = output.strip()
    if not text or _NOT_INSTALLED.match(text):
        return []

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None
    match parsed:
        case list():
            return _from_profile(parsed)
        case {"elements": list(elements)}:
            return _from_profile(elements)
        case dict():
            return _from_profile(parsed.values())

    packages: list[NixPackage] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or _NOT_INSTALLED.match(line):
            continue
        if m := _VERSIONED.match(line):
            packages.append(NixPackage(name=m.group(1).strip(), version=m.group(2).strip(), source="nix-env"))
        else:
            packages.append(NixPackage(name=line, version=MISSING, source="nix"))
    return packages


# =============================================================================
# Runner
# =============================================================================


class PlatformOps:
    """Runs platform scripts against one server through one-shot executions."""

    def __init__(self, sessions: SessionManager) -> None:
        self._sessions = sessions
        self._log = logger.bind(component="platform")

    async def run(self, target: SessionTarget, secret: str, command: str, *, timeout: float | None = None) -> str:
        result = await self._sessions.exec_one_shot(target, secret, command, timeout=timeout)
        return result.stdout

    async def docker_images(self, target: SessionTarget, secret: str) -> list[DockerImage]:
        return parse_docker_images(await self.run(target, secret, build_docker_images_command()))

    async def docker_containers(self, target: SessionTarget, secret: str) -> list[DockerContainer]:
        return parse_docker_containers(await self.run(target, secret, build_docker_containers_command()))

    async def nix_packages(self, target: SessionTarget, secret: str) -> list[NixPackage]:
        return parse_nix_packages(await self.run(target, secret, build_nix_packages_command()))

    async def setup_docker(
        self,
        target: SessionTarget,
        secret: str,
        *,
        install: bool = True,
        dockerfile: str | None = None,
        dockerfile_path: str | None = None,
    ) -> str:
        self._log.bind(resource_id=target.resource_id).info("Docker setup requested")
        return await self.run(target, secret, build_docker_setup_command(install, dockerfile, dockerfile_path))
