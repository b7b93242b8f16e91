"""
Сборка GPU backend (ggml-cuda) для Tesla K80 (compute capability 3.7).

Порядок:
- найти CUDA Toolkit (стандартные каталоги установки, затем nvcc в PATH)
- предпочесть CUDA 11.x: в CUDA 12 убрана поддержка sm_37
- выставить CUDA_PATH для текущего процесса
- cmake configure -> build -> install; первая ошибка прерывает всё

Запуск:
  python scripts/build_cuda.py [-j 8] [--dry-run]
"""

import argparse
import glob
import logging
import os
import re
import shutil
import subprocess
import sys
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, TextIO, Tuple

from dotenv import load_dotenv

from console import paint, setup_logging, use_color

load_dotenv()

logger = logging.getLogger("cuda37-devtools")

NO_CUDA_MESSAGE = "No CUDA installation found"
OUTPUT_TAIL_LINES = int(os.getenv("BUILD_OUTPUT_TAIL", "40"))

Stage = Tuple[str, List[str]]


def _default_parallel() -> int:
    raw = os.getenv("BUILD_PARALLEL", "").strip()
    return int(raw) if raw else (os.cpu_count() or 1)


@dataclass
class BuildConfig:
    preset: str = field(default_factory=lambda: os.getenv("CMAKE_PRESET", "CUDA 11"))
    cuda_architectures: str = field(default_factory=lambda: os.getenv("CUDA_ARCHITECTURES", "37"))
    target: str = field(default_factory=lambda: os.getenv("BUILD_TARGET", "ggml-cuda"))
    build_dir: str = field(default_factory=lambda: os.getenv("BUILD_DIR", "build"))
    dist_dir: str = field(default_factory=lambda: os.getenv("DIST_DIR", "dist/windows-amd64"))
    component: str = field(default_factory=lambda: os.getenv("INSTALL_COMPONENT", "CUDA"))
    parallel: int = field(default_factory=_default_parallel)
    preferred_major: int = field(default_factory=lambda: int(os.getenv("CUDA_PREFERRED_MAJOR", "11")))
    cmake: str = field(default_factory=lambda: os.getenv("CMAKE_BIN", "cmake"))
    source_dir: str = "."

    def install_prefix(self, major: Optional[int] = None) -> Path:
        """Versioned output directory, e.g. dist/windows-amd64/cuda_v11."""
        return Path(self.dist_dir) / f"cuda_v{major if major is not None else self.preferred_major}"

    def lib_dir(self, major: Optional[int] = None) -> Path:
        return self.install_prefix(major) / "lib"


@dataclass
class StageResult:
    name: str
    command: List[str]
    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class BuildOutcome:
    exit_code: int
    message: str
    cuda_root: Optional[Path] = None
    stages: List[StageResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class BuildError(Exception):
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


class SubprocessRunner:
    """Runs a stage, echoing its output live and keeping the last lines for the report."""

    def __init__(self, stream: TextIO = sys.stdout, tail: int = OUTPUT_TAIL_LINES, cwd: Optional[str] = None):
        self.stream = stream
        self.tail = tail
        self.cwd = cwd

    def __call__(self, name: str, cmd: Sequence[str], env: Mapping[str, str]) -> Tuple[int, str]:
        lines = deque(maxlen=self.tail)
        try:
            proc = subprocess.Popen(
                list(cmd), stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                text=True, errors="replace", env=dict(env), cwd=self.cwd,
            )
        except OSError as e:
            logger.error("STAGE %s: не удалось запустить %s: %s", name, cmd[0], e)
            return 127, str(e)
        with proc:
            for line in proc.stdout:
                self.stream.write(line)
                lines.append(line.rstrip("\n"))
        return proc.returncode, "\n".join(lines)


class DryRunRunner:
    """Records commands instead of running them. `fail` maps stage name to a fake exit code."""

    def __init__(self, fail: Optional[Dict[str, int]] = None):
        self.fail = dict(fail or {})
        self.calls: List[Tuple[str, List[str]]] = []

    def __call__(self, name: str, cmd: Sequence[str], env: Mapping[str, str]) -> Tuple[int, str]:
        self.calls.append((name, list(cmd)))
        return self.fail.get(name, 0), "dry-run: " + " ".join(cmd)


StageRunner = Callable[[str, Sequence[str], Mapping[str, str]], Tuple[int, str]]


def default_search_patterns(platform: str = sys.platform) -> List[str]:
    if platform.startswith("win"):
        root = os.environ.get("ProgramFiles", r"C:\Program Files")
        return [os.path.join(root, "NVIDIA GPU Computing Toolkit", "CUDA", "v*")]
    return ["/usr/local/cuda-*", "/usr/local/cuda"]


def discover_cuda_candidates(
    patterns: Iterable[str],
    which: Callable[[str], Optional[str]] = shutil.which,
) -> List[Path]:
    """Toolkit roots from the install globs; falls back to nvcc on PATH when the globs find nothing."""
    found: List[Path] = []
    for pattern in patterns:
        for hit in sorted(glob.glob(pattern)):
            p = Path(hit)
            if p.is_dir() and p not in found:
                found.append(p)
    if found:
        return found

    exe = which("nvcc")
    if exe:
        root = Path(exe).parent.parent
        logger.warning("DISCOVER: CUDA не найдена в стандартных каталогах, берём nvcc из PATH: %s", exe)
        return [root]
    return []


def nvcc_path(root: Path, platform: str = sys.platform) -> Path:
    return Path(root) / "bin" / ("nvcc.exe" if platform.startswith("win") else "nvcc")


def has_nvcc(root: Path, platform: str = sys.platform) -> bool:
    return nvcc_path(root, platform).is_file()


def _matches_major(root: Path, major: int) -> bool:
    return re.search(rf"(?<!\d){major}\.", Path(root).name) is not None


def cuda_major(root: Path) -> Optional[int]:
    m = re.search(r"(\d+)\.\d+", Path(root).name)
    return int(m.group(1)) if m else None


def select_cuda_root(
    candidates: Sequence[Path],
    preferred_major: int = 11,
    platform: str = sys.platform,
) -> Optional[Path]:
    usable = [c for c in candidates if has_nvcc(c, platform)]
    for c in usable:
        if _matches_major(c, preferred_major):
            return c
    return usable[0] if usable else None


def require_cuda_root(candidates: Sequence[Path], preferred_major: int = 11, platform: str = sys.platform) -> Path:
    root = select_cuda_root(candidates, preferred_major, platform)
    if root is None:
        searched = ", ".join(str(c) for c in candidates) or "нет кандидатов"
        raise BuildError(f"{NO_CUDA_MESSAGE} (проверено: {searched}). Установите CUDA Toolkit {preferred_major}.x.")
    return root


def build_stages(config: BuildConfig, cuda_root: Path, platform: str = sys.platform) -> List[Stage]:
    major = cuda_major(cuda_root)
    return [
        ("configure", [
            config.cmake, "--preset", config.preset,
            "-S", config.source_dir,
            "-B", config.build_dir,
            f"-DCMAKE_CUDA_ARCHITECTURES={config.cuda_architectures}",
            f"-DCMAKE_CUDA_COMPILER={nvcc_path(cuda_root, platform)}",
            f"-DCUDAToolkit_ROOT={cuda_root}",
        ]),
        ("build", [
            config.cmake, "--build", config.build_dir,
            "--config", "Release",
            "--target", config.target,
            "--parallel", str(config.parallel),
        ]),
        ("install", [
            config.cmake, "--install", config.build_dir,
            "--component", config.component,
            "--strip",
            "--prefix", str(config.install_prefix(major)),
        ]),
    ]


def run_pipeline(
    stages: Sequence[Stage],
    runner: StageRunner,
    env: Mapping[str, str],
    stream: Optional[TextIO] = None,
    color: bool = False,
) -> List[StageResult]:
    """Run stages in order; the first non-zero stage ends the pipeline."""
    results = []
    for name, cmd in stages:
        logger.warning("STAGE %s: %s", name, " ".join(cmd))
        if stream is not None:
            print(paint(f"==> {name}: {' '.join(cmd)}", "cyan", color), file=stream)
        code, output = runner(name, cmd, env)
        result = StageResult(name=name, command=list(cmd), returncode=code, output=output)
        results.append(result)
        if not result.ok:
            logger.error("STAGE %s FAILED: exit code %s", name, code)
            if stream is not None:
                print(paint(f"[FAIL] {name} (exit code {code})", "red", color), file=stream)
            break
        if stream is not None:
            print(paint(f"[ OK ] {name}", "green", color), file=stream)
    return results


def orchestrate(
    config: Optional[BuildConfig] = None,
    runner: Optional[StageRunner] = None,
    patterns: Optional[Iterable[str]] = None,
    which: Optional[Callable[[str], Optional[str]]] = None,
    environ: MutableMapping[str, str] = os.environ,
    platform: str = sys.platform,
    stream: Optional[TextIO] = None,
    color: bool = False,
) -> BuildOutcome:
    config = config or BuildConfig()
    runner = runner or SubprocessRunner()
    patterns = list(patterns) if patterns is not None else default_search_patterns(platform)

    candidates = discover_cuda_candidates(patterns, which=which or shutil.which)
    logger.warning("DISCOVER: кандидаты CUDA: %s", [str(c) for c in candidates])
    try:
        root = require_cuda_root(candidates, config.preferred_major, platform)
    except BuildError as e:
        logger.error("DISCOVER: %s", e)
        if stream is not None:
            print(paint(str(e), "red", color), file=stream)
        return BuildOutcome(exit_code=e.exit_code, message=str(e))

    if stream is not None:
        print(f"CUDA: {root}", file=stream)
    environ["CUDA_PATH"] = str(root)

    results = run_pipeline(build_stages(config, root, platform), runner, dict(environ), stream=stream, color=color)
    failed = next((r for r in results if not r.ok), None)
    if failed is not None:
        return BuildOutcome(
            exit_code=failed.returncode,
            message=f"Этап {failed.name} завершился с кодом {failed.returncode}.",
            cuda_root=root,
            stages=results,
        )
    prefix = config.install_prefix(cuda_major(root))
    return BuildOutcome(exit_code=0, message=f"Готово: {prefix / 'lib'}", cuda_root=root, stages=results)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Build the ggml CUDA backend for compute capability 3.7.")
    parser.add_argument("-j", "--jobs", type=int, default=None, help="parallel build jobs (default: CPU count)")
    parser.add_argument("--preset", default=None, help="cmake configure preset")
    parser.add_argument("--arch", default=None, help="CMAKE_CUDA_ARCHITECTURES value")
    parser.add_argument("--dry-run", action="store_true", help="print cmake commands without running them")
    args = parser.parse_args(argv)

    setup_logging()
    config = BuildConfig()
    if args.jobs is not None:
        config.parallel = args.jobs
    if args.preset:
        config.preset = args.preset
    if args.arch:
        config.cuda_architectures = args.arch

    runner = DryRunRunner() if args.dry_run else SubprocessRunner()
    color = use_color(sys.stdout)
    outcome = orchestrate(config, runner, stream=sys.stdout, color=color)
    if outcome.ok:
        print(paint(outcome.message, "green", color))
    elif outcome.stages:
        print(paint(outcome.message, "red", color))
    return outcome.exit_code
