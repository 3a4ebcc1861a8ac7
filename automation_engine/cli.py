"""CLI del motor de automatización.

    python -m automation_engine.cli run           # motor sin HTTP
    python -m automation_engine.cli serve         # motor + /health, /ready, /metrics
    python -m automation_engine.cli check-rules   # valida reglas guardadas
    python -m automation_engine.cli init-db       # crea tablas si no existen
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

import uvicorn

from common.config import get_settings
from common.db import get_engine

from .cache.latest_reading import InMemoryLatestReadingCache
from .infrastructure.persistence.repository import SqlAutomationRepository
from .infrastructure.persistence.schema import ensure_schema
from .rules.evaluator import RuleEvaluator
from .rules.service import RuleService
from .service import AutomationService

logger = logging.getLogger(__name__)


def _cmd_run(args) -> int:
    service = AutomationService(get_settings())
    if not service.start():
        return 1

    stop = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("Signal %s received, stopping...", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    while not stop.wait(args.stats_every):
        logger.info("[SERVICE] %s", service.handler.stats)

    service.stop()
    return 0


def _cmd_serve(args) -> int:
    uvicorn.run("automation_engine.main:app", host=args.host, port=args.port, log_level="info")
    return 0


def _cmd_check_rules(args) -> int:
    repository = SqlAutomationRepository(get_engine(get_settings()))
    evaluator = RuleEvaluator(repository, InMemoryLatestReadingCache())
    report = RuleService(repository, evaluator).check_rules()

    if not report:
        print("All rules valid")
        return 0

    for rule_id, problems in sorted(report.items()):
        print(f"rule {rule_id}:")
        for problem in problems:
            print(f"  - {problem}")
    return 1


def _cmd_init_db(args) -> int:
    ensure_schema(get_engine(get_settings()))
    print("Schema ready")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="automation-engine", description="IoT automation engine")
    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="start the engine and block until SIGINT/SIGTERM")
    run.add_argument("--stats-every", type=float, default=60.0, help="seconds between stats log lines")
    run.set_defaults(func=_cmd_run)

    serve = sub.add_parser("serve", help="start the engine behind the HTTP health surface")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8010)
    serve.set_defaults(func=_cmd_serve)

    check = sub.add_parser("check-rules", help="report stored rules with invalid references")
    check.set_defaults(func=_cmd_check_rules)

    init_db = sub.add_parser("init-db", help="create tables if they do not exist")
    init_db.set_defaults(func=_cmd_init_db)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
