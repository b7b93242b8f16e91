import argparse
import glob
import json
import logging
import os
import re
import shutil
import subprocess
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, TextIO, Tuple

from dotenv import load_dotenv

from console import paint, setup_logging, use_color

load_dotenv()

logger = logging.getLogger("cuda37-devtools")

PROJECT_ROOT = os.getenv("PROJECT_ROOT", ".")
CHECK_TIMEOUT = int(os.getenv("CHECK_TIMEOUT", "30"))
EXPECTED_GPU_MODEL = os.getenv("EXPECTED_GPU_MODEL", "Tesla K80")
EXPECTED_COMPUTE_CAP = os.getenv("EXPECTED_COMPUTE_CAP", "3.7")
REQUIRED_DIRS = [d.strip() for d in os.getenv("REQUIRED_DIRS", "cmd,llama,ml/backend/ggml").split(",") if d.strip()]
RUN_CONFIGS = [f.strip() for f in os.getenv("RUN_CONFIGS", ".vscode/launch.json,.vscode/tasks.json").split(",") if f.strip()]

DOCS_HINT = "docs/development.md"

Version = Tuple[int, ...]
Runner = Callable[..., Tuple[int, str, str]]
Which = Callable[[str], Optional[str]]


class Status(str, Enum):
    OK = "OK"
    WARN = "WARN"
    FAIL = "FAIL"


@dataclass
class CheckResult:
    name: str
    status: Status
    message: str
    details: Optional[str] = None
    version: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != Status.FAIL

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status.value,
            "ok": self.ok,
            "message": self.message,
            "details": self.details,
            "version": self.version,
        }


@dataclass(frozen=True)
class VersionRule:
    minimum: Version
    # exclusive upper bound; versions at or above it only warn
    below: Optional[Version] = None


@dataclass(frozen=True)
class ToolSpec:
    name: str
    command: Tuple[str, ...]
    pattern: str
    rule: VersionRule
    critical: bool = True
    hint: str = ""


def _run(cmd: Sequence[str], cwd: Optional[str] = None, timeout: int = CHECK_TIMEOUT) -> Tuple[int, str, str]:
    """Run a command and capture output."""
    p = subprocess.run(list(cmd), capture_output=True, text=True, timeout=timeout, cwd=cwd)
    return p.returncode, p.stdout.strip(), p.stderr.strip()


def _fmt(version: Version) -> str:
    return ".".join(str(v) for v in version)


def _pad(a: Version, b: Version) -> Tuple[Version, Version]:
    n = max(len(a), len(b))
    return a + (0,) * (n - len(a)), b + (0,) * (n - len(b))


def parse_version(text: str, pattern: str) -> Optional[Version]:
    """Extract a dotted version from tool output; None when the pattern does not match."""
    m = re.search(pattern, text or "")
    if not m:
        return None
    try:
        return tuple(int(part) for part in m.group(1).split(".") if part != "")
    except ValueError:
        return None


def compare_versions(found: Version, rule: VersionRule) -> Status:
    found_p, minimum = _pad(found, rule.minimum)
    if found_p < minimum:
        return Status.FAIL
    if rule.below is not None:
        found_p, below = _pad(found, rule.below)
        if found_p >= below:
            return Status.WARN
    return Status.OK


DEFAULT_TOOLS: List[ToolSpec] = [
    ToolSpec(
        name="go",
        command=("go", "version"),
        pattern=r"go(\d+\.\d+(?:\.\d+)?)",
        rule=VersionRule(minimum=(1, 24)),
        hint="Установите Go 1.24+ с https://go.dev/dl/",
    ),
    ToolSpec(
        name="gcc",
        command=("gcc", "--version"),
        pattern=r"(\d+\.\d+\.\d+)",
        rule=VersionRule(minimum=(10, 0)),
        hint="Нужен gcc 10+ для cgo (на Windows: MinGW-w64 / w64devkit в PATH).",
    ),
    ToolSpec(
        name="nvcc",
        command=("nvcc", "--version"),
        pattern=r"release (\d+\.\d+)",
        rule=VersionRule(minimum=(11, 0), below=(12, 0)),
        hint="Установите CUDA Toolkit 11.x: в CUDA 12 убрана поддержка sm_37 (Tesla K80).",
    ),
    ToolSpec(
        name="cmake",
        command=("cmake", "--version"),
        pattern=r"cmake version (\d+\.\d+(?:\.\d+)?)",
        rule=VersionRule(minimum=(3, 24)),
        hint="Нужен CMake 3.24+ (поддержка presets): https://cmake.org/download/",
    ),
    ToolSpec(
        name="git",
        command=("git", "--version"),
        pattern=r"git version (\d+\.\d+(?:\.\d+)?)",
        rule=VersionRule(minimum=(2, 30)),
        hint="Установите Git 2.30+.",
    ),
    ToolSpec(
        name="node",
        command=("node", "--version"),
        pattern=r"v(\d+\.\d+(?:\.\d+)?)",
        rule=VersionRule(minimum=(18, 0)),
        critical=False,
        hint="Node.js 18+ нужен только для сборки UI.",
    ),
    ToolSpec(
        name="tsc",
        command=("tsc", "--version"),
        pattern=r"Version (\d+\.\d+(?:\.\d+)?)",
        rule=VersionRule(minimum=(5, 0)),
        critical=False,
        hint="npm install -g typescript",
    ),
]

DEFAULT_TOOL_HINTS = {spec.name: spec.hint for spec in DEFAULT_TOOLS}
DEFAULT_TOOL_HINTS.update({
    "visual_studio": "Установите Visual Studio 2019/2022 с компонентом 'Desktop development with C++'.",
    "go_modules": "Выполните `go mod download` в корне проекта.",
    "gpu": "Проверьте драйвер NVIDIA (для K80 нужна ветка 470.x).",
    "installer": "Inno Setup нужен только для сборки установщика.",
})


def check_tool(spec: ToolSpec, run: Runner = _run, which: Which = shutil.which) -> CheckResult:
    """Invoke a tool with its version flag and classify the reported version."""
    missing = Status.FAIL if spec.critical else Status.WARN
    exe = which(spec.command[0])
    if not exe:
        return CheckResult(spec.name, missing, f"{spec.command[0]} не найден в PATH.", details=spec.hint)
    try:
        code, out, err = run([exe, *spec.command[1:]])
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.error("CHECK %s: не удалось запустить %s: %s", spec.name, exe, e)
        return CheckResult(spec.name, missing, f"{spec.command[0]} не удалось запустить.", details=str(e))
    logger.debug("CHECK %s: code=%s out=%r", spec.name, code, out[:200])
    if code != 0:
        return CheckResult(
            spec.name, missing, f"{spec.command[0]} завершился с кодом {code}.", details=err or out or spec.hint
        )

    found = parse_version(out or err, spec.pattern)
    if found is None:
        return CheckResult(
            spec.name, Status.WARN, "Не удалось определить версию.", details=(out or err)[:500]
        )

    version = _fmt(found)
    status = compare_versions(found, spec.rule)
    if status == Status.FAIL:
        if not spec.critical:
            status = Status.WARN
        return CheckResult(
            spec.name, status, f"версия {version} ниже минимальной {_fmt(spec.rule.minimum)}.",
            details=spec.hint, version=version,
        )
    if status == Status.WARN:
        return CheckResult(
            spec.name, status, f"версия {version} новее поддерживаемой (< {_fmt(spec.rule.below)}).",
            details=spec.hint, version=version,
        )
    return CheckResult(spec.name, Status.OK, f"версия {version}", version=version)


VSWHERE_RULE = VersionRule(minimum=(16, 0))


def _vswhere_default() -> str:
    root = os.environ.get("ProgramFiles(x86)", r"C:\Program Files (x86)")
    return os.path.join(root, "Microsoft Visual Studio", "Installer", "vswhere.exe")


def check_visual_studio(run: Runner = _run, which: Which = shutil.which, platform: str = sys.platform) -> CheckResult:
    """Checks a Visual Studio instance with the C++ toolset via vswhere (Windows only)."""
    name = "visual_studio"
    if not platform.startswith("win"):
        return CheckResult(name, Status.WARN, "Проверка Visual Studio пропущена (не Windows).")
    exe = which("vswhere")
    if not exe and os.path.isfile(_vswhere_default()):
        exe = _vswhere_default()
    if not exe:
        return CheckResult(name, Status.FAIL, "vswhere не найден: Visual Studio не установлена.",
                           details=DEFAULT_TOOL_HINTS[name])
    try:
        code, out, err = run([exe, "-latest", "-products", "*", "-property", "installationVersion"])
    except (OSError, subprocess.TimeoutExpired) as e:
        return CheckResult(name, Status.FAIL, "vswhere не удалось запустить.", details=str(e))
    found = parse_version(out, r"(\d+\.\d+(?:\.\d+)*)") if code == 0 else None
    if found is None:
        return CheckResult(name, Status.FAIL, "Экземпляр Visual Studio не найден.",
                           details=err or DEFAULT_TOOL_HINTS[name])
    version = _fmt(found)
    if compare_versions(found, VSWHERE_RULE) == Status.FAIL:
        return CheckResult(name, Status.FAIL, f"Visual Studio {version} слишком старая (нужна 2019+).",
                           details=DEFAULT_TOOL_HINTS[name], version=version)
    return CheckResult(name, Status.OK, f"Visual Studio {version}", version=version)


KNOWN_COMPUTE_CAPS = {
    "Tesla K80": "3.7",
    "Tesla K40": "3.5",
    "Tesla K20": "3.5",
}


def _check_gpu_by_name(run: Runner, exe: str, expected_model: str, expected_cc: str, error: str) -> CheckResult:
    name = "gpu"
    try:
        code, out, err = run([exe, "--query-gpu=name", "--format=csv,noheader"])
    except (OSError, subprocess.TimeoutExpired) as e:
        return CheckResult(name, Status.WARN, "nvidia-smi не удалось запустить.", details=str(e))
    if code != 0:
        return CheckResult(name, Status.WARN, "nvidia-smi завершился с ошибкой.", details=err or out or error)
    if any(expected_model in line for line in out.splitlines()):
        if KNOWN_COMPUTE_CAPS.get(expected_model) == expected_cc:
            return CheckResult(name, Status.OK, f"{expected_model} (compute capability {expected_cc}, по модели)",
                               details="Драйвер не сообщает compute_cap.", version=expected_cc)
        return CheckResult(name, Status.WARN, f"{expected_model} найден, compute capability не определена.",
                           details=error or None)
    return CheckResult(
        name, Status.WARN, f"GPU {expected_model} с compute capability {expected_cc} не найден.",
        details=out[:500] or None,
    )


def check_gpu(
    run: Runner = _run,
    which: Which = shutil.which,
    expected_model: str = EXPECTED_GPU_MODEL,
    expected_cc: str = EXPECTED_COMPUTE_CAP,
) -> CheckResult:
    """Looks for the target GPU model and compute capability in nvidia-smi output.

    A GPU is not required to build, so every miss here is only a warning.
    """
    name = "gpu"
    exe = which("nvidia-smi")
    if not exe:
        return CheckResult(name, Status.WARN, "nvidia-smi не найден в PATH.", details=DEFAULT_TOOL_HINTS[name])
    try:
        code, out, err = run([exe, "--query-gpu=name,compute_cap", "--format=csv,noheader"])
    except (OSError, subprocess.TimeoutExpired) as e:
        return CheckResult(name, Status.WARN, "nvidia-smi не удалось запустить.", details=str(e))
    if code != 0:
        # drivers before 510 (470.x is the last K80 branch) do not know compute_cap
        return _check_gpu_by_name(run, exe, expected_model, expected_cc, err or out)

    for line in out.splitlines():
        if expected_model in line and re.search(rf"(?<![\d.]){re.escape(expected_cc)}(?![\d])", line):
            return CheckResult(name, Status.OK, f"{expected_model} (compute capability {expected_cc})",
                               version=expected_cc)
    return CheckResult(
        name, Status.WARN, f"GPU {expected_model} с compute capability {expected_cc} не найден.",
        details=out[:500] or None,
    )


def check_go_modules(project_root: str = PROJECT_ROOT, run: Runner = _run, which: Which = shutil.which) -> CheckResult:
    name = "go_modules"
    exe = which("go")
    if not exe:
        return CheckResult(name, Status.FAIL, "go не найден: проверка модулей невозможна.")
    try:
        code, out, err = run([exe, "mod", "verify"], cwd=project_root)
    except (OSError, subprocess.TimeoutExpired) as e:
        return CheckResult(name, Status.FAIL, "go mod verify не удалось запустить.", details=str(e))
    if code != 0:
        return CheckResult(name, Status.FAIL, "go mod verify сообщил об ошибках.",
                           details=err or out or DEFAULT_TOOL_HINTS[name])
    return CheckResult(name, Status.OK, out.splitlines()[-1] if out else "all modules verified")


def installer_patterns() -> List[str]:
    roots = {os.environ.get("ProgramFiles", r"C:\Program Files"),
             os.environ.get("ProgramFiles(x86)", r"C:\Program Files (x86)")}
    return [os.path.join(root, "Inno Setup*", "ISCC.exe") for root in sorted(roots)]


def check_installer(patterns: Optional[Iterable[str]] = None) -> CheckResult:
    name = "installer"
    for pattern in patterns if patterns is not None else installer_patterns():
        hits = sorted(glob.glob(pattern))
        if hits:
            return CheckResult(name, Status.OK, f"Inno Setup: {hits[0]}")
    return CheckResult(name, Status.WARN, "Inno Setup (ISCC.exe) не найден.", details=DEFAULT_TOOL_HINTS[name])


def check_project_layout(
    project_root: str = PROJECT_ROOT,
    required_dirs: Iterable[str] = REQUIRED_DIRS,
    run_configs: Iterable[str] = RUN_CONFIGS,
) -> List[CheckResult]:
    """One result per required directory (FAIL when missing) and per IDE run configuration (WARN)."""
    root = Path(project_root)
    results = []
    for d in required_dirs:
        if (root / d).is_dir():
            results.append(CheckResult(f"dir:{d}", Status.OK, "каталог на месте"))
        else:
            results.append(CheckResult(f"dir:{d}", Status.FAIL, f"нет каталога {root / d}",
                                       details="Запускайте проверку из корня репозитория или задайте PROJECT_ROOT."))
    for f in run_configs:
        if (root / f).is_file():
            results.append(CheckResult(f"run_config:{f}", Status.OK, "конфигурация запуска найдена"))
        else:
            results.append(CheckResult(f"run_config:{f}", Status.WARN, f"нет файла {root / f}"))
    return results


def run_checks(
    project_root: str = PROJECT_ROOT,
    run: Runner = _run,
    which: Which = shutil.which,
    platform: str = sys.platform,
    tools: Sequence[ToolSpec] = DEFAULT_TOOLS,
    installer_globs: Optional[Iterable[str]] = None,
) -> List[CheckResult]:
    """Run every check to completion and return the outcomes in report order."""
    results = [check_tool(spec, run=run, which=which) for spec in tools]
    results.append(check_visual_studio(run=run, which=which, platform=platform))
    results.append(check_gpu(run=run, which=which))
    results.append(check_go_modules(project_root, run=run, which=which))
    results.append(check_installer(installer_globs))
    results.extend(check_project_layout(project_root))
    for r in results:
        logger.debug("CHECK %s: %s %s", r.name, r.status.value, r.message)
    return results


def all_passed(results: Iterable[CheckResult]) -> bool:
    return all(r.ok for r in results)


def build_report(results: Sequence[CheckResult]) -> dict:
    report = {r.name: r.to_dict() for r in results}
    report["all_ok"] = all_passed(results)
    return report


def summarize_checks(**kwargs) -> dict:
    """Return a machine-readable summary of checks."""
    return build_report(run_checks(**kwargs))


STATUS_COLORS = {Status.OK: "green", Status.WARN: "yellow", Status.FAIL: "red"}


def format_check(result: CheckResult, color: bool = False) -> str:
    tag = paint(f"[{result.status.value:^4}]", STATUS_COLORS[result.status], color)
    line = f"{tag} {result.name}: {result.message}"
    if result.version and result.version not in result.message:
        line += f" ({result.version})"
    if result.details and result.status != Status.OK:
        line += f"\n       -> {result.details}"
    return line


def print_report(results: Sequence[CheckResult], stream: TextIO = sys.stdout, color: bool = False) -> bool:
    for r in results:
        print(format_check(r, color), file=stream)

    failed = [r for r in results if not r.ok]
    warned = [r for r in results if r.status == Status.WARN]
    print("", file=stream)
    if not failed:
        msg = "Окружение готово к сборке."
        if warned:
            msg += f" Предупреждений: {len(warned)}."
        print(paint(msg, "green", color), file=stream)
        return True

    print(paint(f"Окружение НЕ готово: ошибок {len(failed)}.", "red", color), file=stream)
    for r in failed:
        hint = DEFAULT_TOOL_HINTS.get(r.name) or r.details
        if hint:
            print(f"  - {r.name}: {hint}", file=stream)
    print(f"Подсказка: смотрите {DOCS_HINT}", file=stream)
    return False


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Check the toolchain for the compute capability 3.7 build.")
    parser.add_argument("--project-root", default=PROJECT_ROOT)
    parser.add_argument("--json", action="store_true", help="print a machine-readable report")
    args = parser.parse_args(argv)

    setup_logging()
    results = run_checks(project_root=args.project_root)
    if args.json:
        report = build_report(results)
        print(json.dumps(report, ensure_ascii=False, indent=2))
        return 0 if report["all_ok"] else 2

    return 0 if print_report(results, sys.stdout, use_color(sys.stdout)) else 2
