"""
Сборка ggml-cuda для compute capability 3.7 (Tesla K80).

Настройки берутся из окружения / .env: CMAKE_PRESET, CUDA_ARCHITECTURES,
BUILD_TARGET, BUILD_DIR, DIST_DIR, BUILD_PARALLEL, CUDA_PREFERRED_MAJOR.

Запуск:
  python scripts/build_cuda.py -j 8
  python scripts/build_cuda.py --dry-run
"""

from cuda_build import main


if __name__ == "__main__":
    raise SystemExit(main())
