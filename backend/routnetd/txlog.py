from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Tuple

log = logging.getLogger("routnetd.txlog")


@dataclass(frozen=True)
class Compensation:
    label: str
    action: Callable[[], object]


class TransactionLog:
    """
    Stack of compensating actions, one per successful mutation.

    drain() runs them strictly last-in-first-out. A compensation that raises is
    logged and skipped; teardown always continues to the bottom of the stack.
    """

    def __init__(self) -> None:
        self._stack: List[Compensation] = []
        self._lock = threading.Lock()

    def push(self, label: str, action: Callable[[], object]) -> None:
        with self._lock:
            self._stack.append(Compensation(label, action))
        log.debug("compensation_pushed:%s", label)

    def __len__(self) -> int:
        return len(self._stack)

    def labels(self) -> List[str]:
        return [c.label for c in self._stack]

    def drain(self) -> List[Tuple[str, bool]]:
        """
        Returns (label, ok) for every compensation executed, in execution order.
        """
        results: List[Tuple[str, bool]] = []
        while True:
            with self._lock:
                if not self._stack:
                    break
                comp = self._stack.pop()
            try:
                comp.action()
                results.append((comp.label, True))
            except Exception:
                log.warning("compensation_failed:%s", comp.label, exc_info=True)
                results.append((comp.label, False))
        if results:
            failed = [label for label, ok in results if not ok]
            log.info("txlog_drained count=%s failed=%s", len(results), ",".join(failed) or "none")
        return results
