"""
Проверка окружения разработчика для сборки GPU backend под Tesla K80 (compute capability 3.7).

Проверяем:
- go, gcc, nvcc (CUDA 11.x), cmake, git: обязательны
- node, tsc: необязательны (только предупреждение)
- Visual Studio (vswhere), GPU (nvidia-smi), go mod verify, Inno Setup
- каталоги проекта и файлы конфигураций запуска IDE

Запуск:
  python scripts/check_env.py [--json] [--project-root PATH]
"""

from toolchain_checks import main


if __name__ == "__main__":
    raise SystemExit(main())
