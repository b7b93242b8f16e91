import os
import html
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.responses import HTMLResponse
from pydantic import BaseModel
from prometheus_client import Counter, Gauge
from prometheus_fastapi_instrumentator import Instrumentator

from console import setup_logging
from toolchain_checks import PROJECT_ROOT, Status, summarize_checks

load_dotenv()

logger = setup_logging()

# -----------------------
# FastAPI init
# -----------------------
app = FastAPI(
    title="cuda37-devtools",
    version="1.0.0",
)

# -----------------------
# Prometheus: custom metrics + auto metrics for FastAPI
# -----------------------
CHECK_RUNS_TOTAL = Counter("toolchain_checks_total", "Количество прогонов проверок окружения")
CHECK_STATUS = Gauge(
    "toolchain_check_status",
    "Статус проверки: 1 = OK, 0.5 = WARN, 0 = FAIL",
    ["check"],
)
STATUS_VALUE = {Status.OK.value: 1.0, Status.WARN.value: 0.5, Status.FAIL.value: 0.0}

Instrumentator().instrument(app).expose(app, include_in_schema=False)


class CheckOut(BaseModel):
    name: str
    status: str
    ok: bool
    message: str
    details: Optional[str] = None
    version: Optional[str] = None


class HealthResponse(BaseModel):
    all_ok: bool
    checks: List[CheckOut]


def _collect() -> HealthResponse:
    report = summarize_checks(project_root=os.getenv("PROJECT_ROOT", PROJECT_ROOT))
    CHECK_RUNS_TOTAL.inc()
    checks = [CheckOut(**v) for k, v in report.items() if k != "all_ok"]
    for c in checks:
        CHECK_STATUS.labels(check=c.name).set(STATUS_VALUE[c.status])
        if c.status == Status.FAIL.value:
            logger.error("CHECK FAIL: %s | %s", c.name, c.message)
    return HealthResponse(all_ok=report["all_ok"], checks=checks)


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    """
    Health endpoint for monitoring.
    Прогоняет все проверки тулчейна и возвращает их как JSON.
    """
    return _collect()


@app.get("/checks/{name:path}", response_model=CheckOut)
def check(name: str) -> CheckOut:
    for c in _collect().checks:
        if c.name == name:
            return c
    raise HTTPException(status_code=404, detail=f"Unknown check: {name}")


# -----------------------
# Minimal HTML summary
# -----------------------
ROW_COLORS = {"OK": "#2e7d32", "WARN": "#b26a00", "FAIL": "#c62828"}

HTML = """<!doctype html>
<html lang='ru'>
<head>
  <meta charset='utf-8' />
  <title>cuda37-devtools</title>
  <style>
    body {{ font-family: Arial, sans-serif; max-width: 900px; margin: 24px; }}
    td, th {{ padding: 4px 10px; text-align: left; }}
  </style>
</head>
<body>
  <h1>Окружение: {verdict}</h1>
  <table>
    <tr><th>Статус</th><th>Проверка</th><th>Сообщение</th></tr>
{rows}
  </table>
  <p><small>JSON: <code>/health</code>. Метрики: <code>/metrics</code>.</small></p>
</body>
</html>"""


@app.get("/", response_class=HTMLResponse)
def index():
    res = _collect()
    rows = "\n".join(
        f"    <tr><td style='color:{ROW_COLORS[c.status]}'>{c.status}</td>"
        f"<td>{html.escape(c.name)}</td><td>{html.escape(c.message)}</td></tr>"
        for c in res.checks
    )
    return HTML.format(verdict="готово" if res.all_ok else "НЕ готово", rows=rows)
