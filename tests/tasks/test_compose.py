import re

import pytest

from hcforge.tasks.compose import (
    HEADER,
    by_package_manager,
    export,
    progress,
    resolve,
    script,
    shell_quote,
    split_windows,
    step,
    when,
    write_file,
)
from hcforge.tasks.scripts import build_startup_script, generate_rdp_username
from hcforge.types import TaskConfig

pytestmark = [pytest.mark.unit]


class TestResolve:
    def test_nested_ops(self):
        assert resolve(["a", None, lambda: "b", ["c", ["d"]]]) == "a\nb\nc\nd"

    def test_shell_quote(self):
        assert shell_quote("it's") == "'it'\"'\"'s'"
        assert shell_quote(None) == "''"

    def test_progress_escapes_quotes(self):
        assert resolve(progress(5, 'say "hi"')) == 'hc_forge_progress 5 "say \\"hi\\""'

    def test_export_quotes_value(self):
        assert resolve(export("HC_FORGE_RDP_PASSWORD", "p'w $x")) == "export HC_FORGE_RDP_PASSWORD='p'\"'\"'w $x'"

    def test_package_manager_dispatch(self):
        text = resolve(by_package_manager({"apt-get": "apt-get update", "dnf": "dnf -y upgrade"}, otherwise="exit 2"))
        assert text.splitlines() == [
            "if command -v apt-get >/dev/null 2>&1; then",
            "  apt-get update",
            "elif command -v dnf >/dev/null 2>&1; then",
            "  dnf -y upgrade",
            "else",
            "  exit 2",
            "fi",
        ]

    def test_when_without_ops_is_empty(self):
        assert resolve(when("true")) == ""

    def test_heredoc_bodies_are_not_indented(self):
        text = resolve(when("[ -d /etc/X11 ]", write_file("/etc/X11/Xwrapper.config", "a=1\nb=2", tag="EOF_X")))
        assert text.splitlines() == [
            "if [ -d /etc/X11 ]; then",
            "  cat > /etc/X11/Xwrapper.config <<'EOF_X'",
            "a=1",
            "b=2",
            "EOF_X",
            "fi",
        ]

    def test_step_sets_progress_window_and_propagates_exit(self):
        text = resolve(step(50, 50, "exit 7"))
        assert text.startswith("HC_FORGE_PROGRESS_BASE=50\nHC_FORGE_PROGRESS_SPAN=50\n(")
        assert text.endswith(") || exit $?")

    def test_script_starts_with_header(self):
        text = script("echo hi")
        assert text.startswith(HEADER)
        assert text.endswith("echo hi")

    @pytest.mark.parametrize(
        ("weights", "expected"),
        [([], []), ([1], [(0, 100)]), ([1, 1], [(0, 50), (50, 50)]), ([1, 1, 1], [(0, 33), (33, 33), (66, 34)])],
    )
    def test_split_windows(self, weights, expected):
        assert split_windows(weights) == expected


class TestStartupScript:
    def test_update_only_uses_full_range(self):
        text = build_startup_script(TaskConfig(region="r1", auto_update=True), "pw")
        assert "HC_FORGE_PROGRESS_BASE=0\nHC_FORGE_PROGRESS_SPAN=100" in text
        assert "apt-get -y -o Dpkg::Options::=--force-confnew dist-upgrade" in text
        assert "HC_FORGE_RDP_PASSWORD" not in text

    def test_combined_steps_split_the_range(self):
        config = TaskConfig(region="r1", auto_update=True, setup_gui_rdp=True, rdp_username="hcforge123456")
        text = build_startup_script(config, "pw")

        update = text.index("Startup package update started.")
        desktop = text.index("Desktop+RDP setup started.")
        assert update < desktop
        assert text.index("HC_FORGE_PROGRESS_BASE=0\nHC_FORGE_PROGRESS_SPAN=50") < update
        assert update < text.index("HC_FORGE_PROGRESS_BASE=50\nHC_FORGE_PROGRESS_SPAN=50") < desktop

    def test_rdp_credentials_are_exported_quoted(self):
        config = TaskConfig(region="r1", setup_gui_rdp=True, rdp_username="hcforge000042")
        text = build_startup_script(config, "it's secret")
        assert "export HC_FORGE_RDP_USER='hcforge000042'" in text
        assert "export HC_FORGE_RDP_PASSWORD='it'\"'\"'s secret'" in text
        assert "exit 6" in text
        assert "port=3389" in text

    def test_heredoc_terminators_stay_at_line_start(self):
        config = TaskConfig(region="r1", setup_gui_rdp=True, rdp_username="hcforge000042")
        lines = build_startup_script(config, "pw").splitlines()
        for tag in ("EOF_HC_FORGE_RDP", "EOF_HC_FORGE_XWRAP", "EOF_HC_FORGE_STARTWM"):
            assert tag in lines

    def test_no_steps_is_rejected(self):
        with pytest.raises(ValueError):
            build_startup_script(TaskConfig(region="r1"), "pw")

    def test_generated_rdp_username(self):
        assert re.fullmatch(r"hcforge\d{6}", generate_rdp_username())
