"""Startup task scripts.

Two sub-steps can run on a freshly created server:

- ``auto_update``: full package upgrade with whatever package manager exists.
- ``setup_gui_rdp``: XFCE desktop plus xrdp, with a dedicated login user
  whose password is the server's admin password.

Exit codes the scripts use:

    2   no supported package manager
    6   RDP password missing from the environment
    7   no way to create the RDP user
    8   xrdp not listening on 3389
    9   xrdp-sesman not listening on 3350
    10  XFCE not installed after setup
"""

from __future__ import annotations

import secrets
from typing import Final

from hcforge.constants import RDP_USER_PREFIX
from hcforge.tasks.compose import (
    Op,
    by_package_manager,
    export,
    fail,
    progress,
    script,
    split_windows,
    step,
    when,
    write_file,
)
from hcforge.types import TaskConfig

RDP_PORT: Final = 3389
SESMAN_PORT: Final = 3350


def generate_rdp_username() -> str:
    """``hcforge`` followed by six random digits."""
    return f"{RDP_USER_PREFIX}{secrets.randbelow(1_000_000):06d}"


# =============================================================================
# Auto update
# =============================================================================


def auto_update() -> Op:
    return [
        progress(2, "Startup package update started."),
        by_package_manager(
            {
                "apt-get": [
                    progress(8, "Package manager: apt-get"),
                    "export DEBIAN_FRONTEND=noninteractive",
                    "apt-get update",
                    progress(26, "apt metadata refreshed."),
                    "apt-get -y -o Dpkg::Options::=--force-confnew dist-upgrade",
                    progress(78, "apt dist-upgrade complete."),
                    "apt-get -y autoremove --purge",
                    progress(92, "apt autoremove complete."),
                ],
                "dnf": [
                    progress(8, "Package manager: dnf"),
                    "dnf -y upgrade --refresh",
                    progress(92, "dnf upgrade complete."),
                ],
                "yum": [
                    progress(8, "Package manager: yum"),
                    "yum -y update",
                    progress(92, "yum update complete."),
                ],
                "zypper": [
                    progress(8, "Package manager: zypper"),
                    "zypper --non-interactive refresh",
                    progress(26, "zypper refresh complete."),
                    "zypper --non-interactive update",
                    progress(92, "zypper update complete."),
                ],
                "pacman": [
                    progress(8, "Package manager: pacman"),
                    "pacman -Syu --noconfirm",
                    progress(92, "pacman upgrade complete."),
                ],
                "apk": [
                    progress(8, "Package manager: apk"),
                    "apk update",
                    progress(28, "apk metadata refreshed."),
                    "apk upgrade",
                    progress(92, "apk upgrade complete."),
                ],
            },
            otherwise=fail("No supported package manager found for automatic updates.", 2),
        ),
        progress(100, "Startup package update finished."),
    ]


# =============================================================================
# Desktop + RDP
# =============================================================================

_DUMP_XRDP_LOGS = """\
hc_dump_xrdp_logs() {
  if [ -f /var/log/xrdp.log ]; then
    tail -n 40 /var/log/xrdp.log | sed 's/^/[hc-forge] xrdp.log: /'
  fi
  if [ -f /var/log/xrdp-sesman.log ]; then
    tail -n 40 /var/log/xrdp-sesman.log | sed 's/^/[hc-forge] xrdp-sesman.log: /'
  fi
  if command -v journalctl >/dev/null 2>&1; then
    journalctl -u xrdp -u xrdp-sesman -n 20 --no-pager 2>/dev/null | sed 's/^/[hc-forge] journal: /'
  fi
}"""

_XSESSION = """\
#!/bin/sh
export XDG_SESSION_TYPE=x11
export XDG_CURRENT_DESKTOP=XFCE
export XDG_SESSION_DESKTOP=xfce
export DESKTOP_SESSION=xfce
unset DBUS_SESSION_BUS_ADDRESS
unset XDG_RUNTIME_DIR
if command -v dbus-launch >/dev/null 2>&1 && command -v xfce4-session >/dev/null 2>&1; then
  exec dbus-launch --exit-with-session xfce4-session
elif command -v startxfce4 >/dev/null 2>&1; then
  exec startxfce4
elif command -v xfce4-session >/dev/null 2>&1; then
  exec xfce4-session
else
  exec xterm
fi"""

_XWRAPPER = """\
allowed_users=anybody
needs_root_rights=yes"""

_STARTWM = """\
#!/bin/sh
if [ -r /etc/profile ]; then
  . /etc/profile
fi
if [ -r "$HOME/.profile" ]; then
  . "$HOME/.profile"
fi
unset DBUS_SESSION_BUS_ADDRESS
unset XDG_RUNTIME_DIR
if [ -r "$HOME/.xsession" ]; then
  exec /bin/sh "$HOME/.xsession"
fi
if command -v startxfce4 >/dev/null 2>&1; then
  exec startxfce4
fi
if command -v xfce4-session >/dev/null 2>&1; then
  exec xfce4-session
fi
if [ -x /etc/X11/Xsession ]; then
  exec /etc/X11/Xsession
fi
exec xterm"""

# Forces [Globals] port=3389 and [Xorg] port=-1 / ip=127.0.0.1, adding the keys if absent.
_XRDP_INI_AWK = r"""awk '
BEGIN { section = ""; globals_port_set = 0; xorg_port_set = 0; xorg_ip_set = 0 }
function flush_section() {
  if (section == "globals" && !globals_port_set) { print "port=3389"; globals_port_set = 1; return }
  if (section == "xorg") {
    if (!xorg_port_set) { print "port=-1"; xorg_port_set = 1 }
    if (!xorg_ip_set) { print "ip=127.0.0.1"; xorg_ip_set = 1 }
  }
}
{
  line = $0
  trimmed = $0
  sub(/^[[:space:]]+/, "", trimmed)
  if (trimmed ~ /^\[/) {
    flush_section()
    header = tolower(trimmed)
    gsub(/[[:space:]]/, "", header)
    if (header == "[globals]") { section = "globals"; globals_port_set = 0 }
    else if (header == "[xorg]") { section = "xorg"; xorg_port_set = 0; xorg_ip_set = 0 }
    else { section = "" }
    print line
    next
  }
  if (section == "globals" && trimmed ~ /^port[[:space:]]*=/) { print "port=3389"; globals_port_set = 1; next }
  if (section == "xorg" && trimmed ~ /^port[[:space:]]*=/) { print "port=-1"; xorg_port_set = 1; next }
  if (section == "xorg" && trimmed ~ /^ip[[:space:]]*=/) { print "ip=127.0.0.1"; xorg_ip_set = 1; next }
  print line
}
END { flush_section() }
' /etc/xrdp/xrdp.ini > /tmp/hc_forge_xrdp.ini"""


def _install_desktop() -> Op:
    return by_package_manager(
        {
            "apt-get": [
                progress(12, "Package manager: apt-get"),
                "export DEBIAN_FRONTEND=noninteractive",
                "apt-get update",
                progress(26, "apt metadata refreshed."),
                "apt-get install -y --no-install-recommends xorg xrdp xorgxrdp xterm xfce4 dbus-x11 xauth x11-xserver-utils",
                progress(78, "apt packages installed."),
            ],
            "dnf": [
                progress(12, "Package manager: dnf"),
                "dnf -y install xrdp xorgxrdp xorg-x11-server-Xorg xterm xfce4-session xfce4-panel xfdesktop xfwm4 thunar xorg-x11-xauth \\\n"
                '  || dnf -y groupinstall "Xfce Desktop" \\\n'
                "  || dnf -y install xrdp xterm xorg-x11-xauth",
                progress(78, "dnf packages installed."),
            ],
            "yum": [
                progress(12, "Package manager: yum"),
                "yum -y install xrdp xorgxrdp xterm xfce4-session xfce4-panel xfdesktop xfwm4 thunar xorg-x11-xauth \\\n"
                '  || yum -y groupinstall "Xfce" \\\n'
                "  || yum -y install xrdp xterm xorg-x11-xauth",
                progress(78, "yum packages installed."),
            ],
            "zypper": [
                progress(12, "Package manager: zypper"),
                "zypper --non-interactive refresh",
                "zypper --non-interactive install -y xrdp xorg-x11-server xterm xfce4-session xfce4-panel xfwm4 thunar xauth \\\n"
                "  || zypper --non-interactive install -y xrdp xorg-x11-server xterm xauth",
                progress(78, "zypper packages installed."),
            ],
            "pacman": [
                progress(12, "Package manager: pacman"),
                "pacman -Syu --noconfirm xorg-server xorg-xinit xterm xfce4 xrdp xorg-xauth",
                progress(78, "pacman packages installed."),
            ],
            "apk": [
                progress(12, "Package manager: apk"),
                "apk update",
                "apk add xrdp xorg-server xinit xterm xfce4 dbus xauth",
                progress(78, "apk packages installed."),
            ],
        },
        otherwise=fail("No supported package manager found for Desktop+RDP setup.", 2),
    )


def _create_rdp_user() -> Op:
    return [
        progress(82, "Preparing RDP login user ${RDP_USER}."),
        """\
if id -u "${RDP_USER}" >/dev/null 2>&1; then
  echo "[hc-forge] RDP user ${RDP_USER} already exists."
elif command -v useradd >/dev/null 2>&1; then
  useradd -m -s /bin/bash "${RDP_USER}" || useradd -m "${RDP_USER}"
elif command -v adduser >/dev/null 2>&1; then
  adduser --disabled-password --gecos "" "${RDP_USER}" >/dev/null 2>&1 || adduser -D "${RDP_USER}"
else
  echo "Cannot create RDP user: no useradd/adduser command found."
  exit 7
fi""",
        when("command -v usermod >/dev/null 2>&1", 'usermod -s /bin/bash "${RDP_USER}" || true'),
        'echo "${RDP_USER}:${RDP_PASSWORD}" | chpasswd',
        progress(86, "RDP user credentials set."),
    ]


def _configure_session() -> Op:
    return [
        'RDP_HOME="$(getent passwd "${RDP_USER}" | cut -d: -f6 || true)"',
        when('[ -z "${RDP_HOME}" ]', 'RDP_HOME="/home/${RDP_USER}"'),
        'mkdir -p "${RDP_HOME}"',
        write_file('"${RDP_HOME}/.xsession"', _XSESSION, tag="EOF_HC_FORGE_RDP"),
        'cp "${RDP_HOME}/.xsession" "${RDP_HOME}/.Xsession"',
        'chown "${RDP_USER}:${RDP_USER}" "${RDP_HOME}/.xsession" "${RDP_HOME}/.Xsession" || true',
        'touch "${RDP_HOME}/.Xauthority"',
        'chown "${RDP_USER}:${RDP_USER}" "${RDP_HOME}/.Xauthority" || true',
        'chmod 700 "${RDP_HOME}" || true',
        'chmod 755 "${RDP_HOME}/.xsession" "${RDP_HOME}/.Xsession" || true',
        'chmod 600 "${RDP_HOME}/.Xauthority" || true',
        progress(88, "XFCE session profile configured for ${RDP_USER}."),
        when("[ -d /etc/X11 ]", write_file("/etc/X11/Xwrapper.config", _XWRAPPER, tag="EOF_HC_FORGE_XWRAP")),
        progress(89, "Xorg wrapper permissions configured."),
        when(
            "[ -f /etc/xrdp/startwm.sh ]",
            write_file("/etc/xrdp/startwm.sh", _STARTWM, tag="EOF_HC_FORGE_STARTWM"),
            "chmod 755 /etc/xrdp/startwm.sh || true",
        ),
        progress(91, "XRDP session launcher configured."),
    ]


def _configure_xrdp() -> Op:
    return [
        when(
            "[ -f /etc/xrdp/xrdp.ini ]",
            "cp /etc/xrdp/xrdp.ini /etc/xrdp/xrdp.ini.hc-forge.bak 2>/dev/null || true",
            _XRDP_INI_AWK,
            "mv /tmp/hc_forge_xrdp.ini /etc/xrdp/xrdp.ini",
            when(
                "command -v grep >/dev/null 2>&1",
                "grep -nE '^\\[|^[[:space:]]*port=|^[[:space:]]*ip=' /etc/xrdp/xrdp.ini"
                " | sed 's/^/[hc-forge] xrdp.ini: /'",
            ),
        ),
        progress(92, f"XRDP configured on port {RDP_PORT}."),
        'echo "[hc-forge] RDP user: ${RDP_USER} (password matches VM admin password)."',
        when(
            "id -u xrdp >/dev/null 2>&1 && getent group ssl-cert >/dev/null 2>&1",
            "usermod -aG ssl-cert xrdp || true",
        ),
        """\
if command -v systemctl >/dev/null 2>&1; then
  systemctl enable xrdp || true
  systemctl enable xrdp-sesman || true
  systemctl restart xrdp || true
  systemctl restart xrdp-sesman || true
elif command -v rc-update >/dev/null 2>&1; then
  rc-update add xrdp default || true
  rc-service xrdp restart || true
elif command -v service >/dev/null 2>&1; then
  service xrdp restart || true
  service xrdp-sesman restart || true
fi""",
        progress(94, "XRDP services restarted."),
    ]


def _verify_xrdp() -> Op:
    return [
        when(
            "command -v ss >/dev/null 2>&1",
            when(
                f"! ss -ltn | grep -q ':{RDP_PORT}'",
                f'echo "[hc-forge] XRDP is not listening on TCP {RDP_PORT}."',
                "hc_dump_xrdp_logs",
                "exit 8",
            ),
            when(
                f"! ss -ltn | grep -q ':{SESMAN_PORT}'",
                f'echo "[hc-forge] XRDP sesman is not listening on TCP {SESMAN_PORT}."',
                "hc_dump_xrdp_logs",
                "exit 9",
            ),
            progress(96, f"XRDP and sesman are listening ({RDP_PORT}/{SESMAN_PORT})."),
        ),
        when(
            "! command -v startxfce4 >/dev/null 2>&1 && ! command -v xfce4-session >/dev/null 2>&1",
            'echo "[hc-forge] XFCE command not found after installation."',
            "hc_dump_xrdp_logs",
            "exit 10",
        ),
    ]


def setup_gui_rdp() -> Op:
    return [
        progress(5, "Desktop+RDP setup started."),
        f'RDP_USER="${{HC_FORGE_RDP_USER:-{RDP_USER_PREFIX}000000}}"',
        'RDP_PASSWORD="${HC_FORGE_RDP_PASSWORD:-}"',
        when('[ -z "${RDP_PASSWORD}" ]', fail("Missing HC_FORGE_RDP_PASSWORD for Desktop+RDP setup.", 6)),
        _DUMP_XRDP_LOGS,
        _install_desktop(),
        _create_rdp_user(),
        _configure_session(),
        _configure_xrdp(),
        _verify_xrdp(),
        progress(100, "Desktop+RDP setup finished."),
    ]


# =============================================================================
# Composition
# =============================================================================


def build_startup_script(config: TaskConfig, admin_password: str) -> str:
    """Compose the enabled sub-steps into one script.

    Each enabled sub-step gets an equal progress window, so a lone step
    reports 0-100 and two steps report 0-50 and 50-100.
    """
    steps: list[Op] = []
    if config.auto_update:
        steps.append(auto_update())
    if config.setup_gui_rdp:
        steps.append(setup_gui_rdp())
    if not steps:
        raise ValueError("startup task has no enabled steps")

    env: list[Op] = []
    if config.setup_gui_rdp:
        env = [
            export("HC_FORGE_RDP_USER", config.rdp_username or generate_rdp_username()),
            export("HC_FORGE_RDP_PASSWORD", admin_password),
        ]

    windows = split_windows([1] * len(steps))
    return script(
        *env,
        *(step(base, span, ops) for (base, span), ops in zip(windows, steps, strict=True)),
    )
