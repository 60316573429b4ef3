"""
Mesh Broadcast

Best-effort propagation of entity mutations to peer nodes. Broadcasts run
on detached daemon threads with their own timeout; the caller gets None
back and never sees a transport failure.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from ..contracts.mesh_transport import BroadcastRecord, MeshTransport

logger = logging.getLogger(__name__)


class MeshBroadcaster:
    """Fire-and-forget sender for mapping and rule mutations"""

    def __init__(self, transport: Optional[MeshTransport], timeout: float = 10.0):
        self.transport = transport
        self.timeout = timeout
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()

    def enabled(self) -> bool:
        return self.transport is not None and self.transport.should_broadcast()

    def broadcast(
        self,
        table: str,
        operation: str,
        record: Dict[str, Any],
        primary_key: Dict[str, Any]
    ) -> None:
        """Queue one record for peers; returns immediately"""
        if not self.enabled():
            return
        self.broadcast_chain([BroadcastRecord(table, operation, record, primary_key)])

    def broadcast_chain(self, steps: List[BroadcastRecord]) -> None:
        """
        Broadcast records in order on one background thread

        Later steps depend on earlier ones: once a step fails the rest
        are skipped, so peers never receive a dependent without its owner.
        """
        if not steps or not self.enabled():
            return
        thread = threading.Thread(
            target=self._run_chain,
            args=(list(steps),),
            name=f"mesh-broadcast-{steps[0].table}",
            daemon=True,
        )
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        thread.start()

    def _run_chain(self, steps: List[BroadcastRecord]) -> None:
        for index, step in enumerate(steps):
            if not self._send(step):
                skipped = len(steps) - index - 1
                if skipped:
                    logger.warning(
                        f"Skipping {skipped} dependent broadcast(s) after {step.table} "
                        f"{step.operation} failed"
                    )
                return

    def _send(self, record: BroadcastRecord) -> bool:
        outcome: Dict[str, Any] = {}

        def deliver() -> None:
            try:
                self.transport.broadcast(record, self.timeout)
                outcome['ok'] = True
            except Exception as e:
                outcome['error'] = e

        worker = threading.Thread(target=deliver, daemon=True)
        worker.start()
        worker.join(self.timeout)

        if worker.is_alive():
            logger.warning(
                f"Mesh broadcast of {record.table} {record.operation} timed out after {self.timeout}s"
            )
            return False
        if 'error' in outcome:
            logger.warning(f"Mesh broadcast of {record.table} {record.operation} failed: {outcome['error']}")
            return False
        logger.debug(f"Broadcast {record.table} {record.operation} to mesh peers")
        return True

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for pending broadcasts, e.g. during shutdown"""
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)
