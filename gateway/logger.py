"""
gateway.logger
~~~~~~~~~~~~~~
Route-service access log: one JSON line per event (daily rotation) and a
short human-readable line on the console.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from .decision import Decision

_ISO = "%Y-%m-%dT%H:%M:%SZ"

def _now() -> str:  # RFC-3339 without microseconds
    return datetime.now(tz=timezone.utc).strftime(_ISO)


def _as_event(record: logging.LogRecord) -> Dict[str, Any]:
    if isinstance(record.msg, dict):
        return record.msg
    # free-text diagnostics from gateway.rules / gateway.decision
    return {
        "event": "log",
        "ts": _now(),
        "level": record.levelname.lower(),
        "logger": record.name,
        "msg": record.getMessage(),
    }


class _PlainFormatter(logging.Formatter):
    """ e.g. 2026-10-19T15:07:02Z 10.1.2.3 GET https://app.example.com/ REJECTED deny rule 10.0.0.0/8 """

    def format(self, record):  # type: ignore[override]
        d = _as_event(record)
        if d["event"] == "log":
            return " ".join([d["ts"], d["level"].upper(), d["logger"], d["msg"]])

        parts = [
            d.get("ts", _now()),
            d.get("ip", "-"),
            d.get("method", "-"),
            d.get("url", "-"),
        ]
        if d["event"] == "reject":
            parts.extend(["REJECTED", d.get("reason", "")])
        elif d["event"] == "allow":
            parts.extend(["ALLOWED", d.get("reason", "")])
        elif d["event"] == "error":
            parts.extend([str(d.get("status", "-")), d.get("error", "")])
        else:  # end
            parts.extend(
                [
                    str(d.get("status", "-")),
                    f'{d.get("ms", 0)} ms',
                ]
            )
        return " ".join(parts)


class _JSONFormatter(logging.Formatter):
    def format(self, record):  # type: ignore[override]
        return json.dumps(_as_event(record), separators=(",", ":"))


class GatewayLogger:
    def __init__(self, basename: str | Path, console: bool = True):
        root = logging.getLogger("gateway")
        root.setLevel(logging.INFO)
        root.propagate = False  # don't spam the root logger
        for old in list(root.handlers):
            root.removeHandler(old)
            old.close()

        basename = Path(basename).with_suffix("")  # gateway
        jsonl_file = basename.with_suffix(".jsonl")

        # json lines
        h = logging.handlers.TimedRotatingFileHandler(
            jsonl_file, when="midnight", backupCount=7, encoding="utf-8"
        )
        h.setFormatter(_JSONFormatter())
        root.addHandler(h)

        if console:
            c = logging.StreamHandler()
            c.setFormatter(_PlainFormatter())
            root.addHandler(c)

        self.log = root
        self.path = jsonl_file

    def verdict(self, peer_ip: str, method: str, url: str, decision: Decision):
        self.log.info(
            {
                "event": "allow" if decision.allowed else "reject",
                "ts": _now(),
                "ip": decision.ip or "-",
                "peer": peer_ip,
                "method": method,
                "url": url,
                "path": decision.path,
                "reason": decision.reason,
            }
        )

    def end(
        self,
        method: str,
        url: str,
        status: int,
        duration_ms: int,
    ):
        self.log.info(
            {
                "event": "end",
                "ts": _now(),
                "method": method,
                "url": url,
                "status": status,
                "ms": duration_ms,
            }
        )

    def error(self, method: str, url: str, status: int, error: str):
        self.log.error(
            {
                "event": "error",
                "ts": _now(),
                "method": method,
                "url": url,
                "status": status,
                "error": error,
            }
        )

    def close(self) -> None:
        for h in list(self.log.handlers):
            self.log.removeHandler(h)
            h.close()
