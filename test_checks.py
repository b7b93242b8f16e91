import io
import os
import subprocess

import pytest

from toolchain_checks import (
    DEFAULT_TOOLS,
    CheckResult,
    Status,
    ToolSpec,
    VersionRule,
    all_passed,
    build_report,
    check_go_modules,
    check_gpu,
    check_installer,
    check_project_layout,
    check_tool,
    check_visual_studio,
    compare_versions,
    format_check,
    parse_version,
    print_report,
    run_checks,
)

TOOLS = {spec.name: spec for spec in DEFAULT_TOOLS}

HEALTHY = {
    "go": (0, "go version go1.24.2 windows/amd64", ""),
    "gcc": (0, "gcc.exe (Rev3, Built by MSYS2 project) 13.2.0", ""),
    "nvcc": (0, "Cuda compilation tools, release 11.8, V11.8.89", ""),
    "cmake": (0, "cmake version 3.28.1\n\nCMake suite maintained and supported by Kitware", ""),
    "git": (0, "git version 2.43.0.windows.1", ""),
    "node": (0, "v20.11.0", ""),
    "tsc": (0, "Version 5.4.5", ""),
    "vswhere": (0, "17.9.34607.119", ""),
    "nvidia-smi": (0, "Tesla K80, 3.7\nTesla K80, 3.7", ""),
    "go mod": (0, "all modules verified", ""),
}


class FakeTools:
    """Stands in for PATH lookup and subprocess: only tools in `outputs` exist."""

    def __init__(self, outputs):
        self.outputs = dict(outputs)
        self.calls = []

    def which(self, name):
        return f"/fake/bin/{name}" if name in self.outputs else None

    def run(self, cmd, cwd=None, timeout=None):
        self.calls.append((list(cmd), cwd))
        name = os.path.basename(cmd[0])
        key = "go mod" if name == "go" and cmd[1:2] == ["mod"] else name
        result = self.outputs[key]
        if isinstance(result, BaseException):
            raise result
        return result


def test_parse_version_from_real_outputs():
    assert parse_version(HEALTHY["go"][1], TOOLS["go"].pattern) == (1, 24, 2)
    assert parse_version(HEALTHY["nvcc"][1], TOOLS["nvcc"].pattern) == (11, 8)
    assert parse_version(HEALTHY["git"][1], TOOLS["git"].pattern) == (2, 43, 0)
    assert parse_version(HEALTHY["gcc"][1], TOOLS["gcc"].pattern) == (13, 2, 0)
    assert parse_version("no version here", TOOLS["cmake"].pattern) is None


def test_compare_versions_is_numeric():
    rule = VersionRule(minimum=(1, 24))
    assert compare_versions((1, 9), rule) == Status.FAIL
    assert compare_versions((1, 23, 9), rule) == Status.FAIL
    assert compare_versions((1, 24), rule) == Status.OK
    assert compare_versions((1, 24, 0), rule) == Status.OK
    assert compare_versions((1, 100), rule) == Status.OK
    assert compare_versions((2,), rule) == Status.OK


def test_compare_versions_upper_bound_warns():
    rule = VersionRule(minimum=(11, 0), below=(12, 0))
    assert compare_versions((11, 8), rule) == Status.OK
    assert compare_versions((12, 0), rule) == Status.WARN
    assert compare_versions((10, 2), rule) == Status.FAIL


@pytest.mark.parametrize("out,expected", [
    ("go version go1.23.9 linux/amd64", Status.FAIL),
    ("go version go1.24 linux/amd64", Status.OK),
    ("go version go1.24.0 linux/amd64", Status.OK),
    ("go version go1.30.1 linux/amd64", Status.OK),
])
def test_go_minimum_boundary(out, expected):
    tools = FakeTools({"go": (0, out, "")})
    result = check_tool(TOOLS["go"], run=tools.run, which=tools.which)
    assert result.status == expected


def test_nvcc_12_is_only_a_warning():
    tools = FakeTools({"nvcc": (0, "Cuda compilation tools, release 12.4, V12.4.131", "")})
    result = check_tool(TOOLS["nvcc"], run=tools.run, which=tools.which)
    assert result.status == Status.WARN
    assert result.version == "12.4"
    assert result.ok


def test_missing_critical_tool_fails_and_optional_warns():
    tools = FakeTools({})
    assert check_tool(TOOLS["cmake"], run=tools.run, which=tools.which).status == Status.FAIL
    assert check_tool(TOOLS["node"], run=tools.run, which=tools.which).status == Status.WARN
    assert tools.calls == []


def test_optional_tool_below_minimum_warns():
    tools = FakeTools({"tsc": (0, "Version 4.9.5", "")})
    result = check_tool(TOOLS["tsc"], run=tools.run, which=tools.which)
    assert result.status == Status.WARN
    assert "4.9.5" in result.message


def test_unparseable_version_warns():
    tools = FakeTools({"cmake": (0, "something unexpected", "")})
    assert check_tool(TOOLS["cmake"], run=tools.run, which=tools.which).status == Status.WARN


def test_invocation_errors_are_reported_not_raised():
    tools = FakeTools({
        "git": OSError("permission denied"),
        "cmake": subprocess.TimeoutExpired(["cmake"], 30),
        "gcc": (1, "", "fatal error"),
    })
    for name in ("git", "cmake", "gcc"):
        result = check_tool(TOOLS[name], run=tools.run, which=tools.which)
        assert result.status == Status.FAIL
        assert result.details


def test_custom_tool_spec():
    spec = ToolSpec("ninja", ("ninja", "--version"), r"(\d+\.\d+(?:\.\d+)?)", VersionRule((1, 10)), critical=False)
    tools = FakeTools({"ninja": (0, "1.11.1", "")})
    assert check_tool(spec, run=tools.run, which=tools.which).status == Status.OK


def test_visual_studio_skipped_outside_windows():
    tools = FakeTools(HEALTHY)
    assert check_visual_studio(tools.run, tools.which, platform="linux").status == Status.WARN
    assert tools.calls == []


def test_visual_studio_on_windows():
    tools = FakeTools(HEALTHY)
    result = check_visual_studio(tools.run, tools.which, platform="win32")
    assert result.status == Status.OK
    assert result.version == "17.9.34607.119"

    old = FakeTools({"vswhere": (0, "15.9.28307.1", "")})
    assert check_visual_studio(old.run, old.which, platform="win32").status == Status.FAIL

    empty = FakeTools({"vswhere": (0, "", "")})
    assert check_visual_studio(empty.run, empty.which, platform="win32").status == Status.FAIL


def test_gpu_detection():
    tools = FakeTools(HEALTHY)
    result = check_gpu(tools.run, tools.which)
    assert result.status == Status.OK
    assert tools.calls[0][0][1] == "--query-gpu=name,compute_cap"

    other = FakeTools({"nvidia-smi": (0, "NVIDIA GeForce RTX 3090, 8.6", "")})
    assert check_gpu(other.run, other.which).status == Status.WARN

    wrong_cc = FakeTools({"nvidia-smi": (0, "Tesla K80, 3.75", "")})
    assert check_gpu(wrong_cc.run, wrong_cc.which).status == Status.WARN

    none = FakeTools({})
    assert check_gpu(none.run, none.which).status == Status.WARN


def test_go_modules(tmp_path):
    tools = FakeTools(HEALTHY)
    result = check_go_modules(str(tmp_path), tools.run, tools.which)
    assert result.status == Status.OK
    assert tools.calls[-1] == (["/fake/bin/go", "mod", "verify"], str(tmp_path))

    broken = FakeTools({"go": (0, "", ""), "go mod": (1, "", "checksum mismatch")})
    result = check_go_modules(str(tmp_path), broken.run, broken.which)
    assert result.status == Status.FAIL
    assert result.details == "checksum mismatch"

    assert check_go_modules(str(tmp_path), FakeTools({}).run, FakeTools({}).which).status == Status.FAIL


def test_installer_glob(tmp_path):
    pattern = str(tmp_path / "Inno Setup*" / "ISCC.exe")
    assert check_installer([pattern]).status == Status.WARN

    (tmp_path / "Inno Setup 6").mkdir()
    (tmp_path / "Inno Setup 6" / "ISCC.exe").write_text("")
    assert check_installer([pattern]).status == Status.OK


def test_project_layout_reports_each_item(tmp_path):
    (tmp_path / "cmd").mkdir()
    (tmp_path / ".vscode").mkdir()
    (tmp_path / ".vscode" / "launch.json").write_text("{}")

    results = check_project_layout(str(tmp_path), ["cmd", "llama", "ml/backend/ggml"],
                                   [".vscode/launch.json", ".vscode/tasks.json"])
    by_name = {r.name: r.status for r in results}
    assert by_name == {
        "dir:cmd": Status.OK,
        "dir:llama": Status.FAIL,
        "dir:ml/backend/ggml": Status.FAIL,
        "run_config:.vscode/launch.json": Status.OK,
        "run_config:.vscode/tasks.json": Status.WARN,
    }


def _project(tmp_path):
    for d in ("cmd", "llama", "ml/backend/ggml", ".vscode"):
        (tmp_path / d).mkdir(parents=True)
    for f in ("launch.json", "tasks.json"):
        (tmp_path / ".vscode" / f).write_text("{}")
    return str(tmp_path)


def test_run_checks_all_green(tmp_path):
    tools = FakeTools(HEALTHY)
    results = run_checks(_project(tmp_path), run=tools.run, which=tools.which,
                         platform="win32", installer_globs=[])
    assert all_passed(results)
    assert [r.status for r in results if r.status != Status.OK] == [Status.WARN]


def test_run_checks_continues_after_failures(tmp_path):
    outputs = dict(HEALTHY)
    del outputs["cmake"]
    del outputs["node"]
    outputs["nvcc"] = (0, "Cuda compilation tools, release 10.2, V10.2.89", "")
    tools = FakeTools(outputs)

    results = run_checks(_project(tmp_path), run=tools.run, which=tools.which,
                         platform="win32", installer_globs=[])
    by_name = {r.name: r for r in results}
    assert by_name["cmake"].status == Status.FAIL
    assert by_name["nvcc"].status == Status.FAIL
    assert by_name["node"].status == Status.WARN
    # checks after the failures still ran
    assert by_name["tsc"].status == Status.OK
    assert by_name["gpu"].status == Status.OK
    assert by_name["go_modules"].status == Status.OK
    assert not all_passed(results)

    report = build_report(results)
    assert report["all_ok"] is False
    assert report["cmake"]["status"] == "FAIL"
    assert report["cmake"]["ok"] is False


def test_print_report_banners(tmp_path):
    tools = FakeTools(HEALTHY)
    results = run_checks(_project(tmp_path), run=tools.run, which=tools.which,
                         platform="win32", installer_globs=[])
    out = io.StringIO()
    assert print_report(results, out) is True
    assert "Окружение готово" in out.getvalue()
    assert "\033[" not in out.getvalue()

    tools = FakeTools({k: v for k, v in HEALTHY.items() if k != "git"})
    results = run_checks(_project(tmp_path / "again"), run=tools.run, which=tools.which,
                         platform="win32", installer_globs=[])
    out = io.StringIO()
    assert print_report(results, out) is False
    text = out.getvalue()
    assert "[FAIL] git" in text
    assert "docs/development.md" in text


def test_format_check_color():
    tools = FakeTools({})
    result = check_tool(TOOLS["go"], run=tools.run, which=tools.which)
    assert format_check(result, color=True).startswith("\033[31m[FAIL]")


def test_format_check_appends_version_once():
    line = format_check(CheckResult("gpu", Status.OK, "Tesla K80", version="3.7"))
    assert line == "[ OK ] gpu: Tesla K80 (3.7)"

    tools = FakeTools(HEALTHY)
    line = format_check(check_tool(TOOLS["go"], run=tools.run, which=tools.which))
    assert line == "[ OK ] go: версия 1.24.2"


class OldDriverSmi:
    """nvidia-smi from the 470.x branch: compute_cap is an unknown field."""

    def __init__(self, names):
        self.names = names
        self.calls = []

    def which(self, name):
        return "/fake/bin/nvidia-smi" if name == "nvidia-smi" else None

    def run(self, cmd, cwd=None, timeout=None):
        self.calls.append(list(cmd))
        if "compute_cap" in cmd[1]:
            return 2, "", 'Field "compute_cap" is not a valid field to query.'
        return 0, self.names, ""


def test_gpu_detection_on_old_driver_uses_model_name():
    smi = OldDriverSmi("Tesla K80\nTesla K80")
    result = check_gpu(smi.run, smi.which)
    assert result.status == Status.OK
    assert result.version == "3.7"
    assert smi.calls[-1][1] == "--query-gpu=name"

    other = OldDriverSmi("Quadro K4000")
    assert check_gpu(other.run, other.which).status == Status.WARN

    unknown_cc = OldDriverSmi("Tesla K80")
    result = check_gpu(unknown_cc.run, unknown_cc.which, expected_cc="3.5")
    assert result.status == Status.WARN
