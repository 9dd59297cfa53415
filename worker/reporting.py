"""
Reporting sink for round deltas.

Runs the scope protocol hook (where secure aggregation would happen) and
hands the delta to the coordinator. A delta is marked reported only after
the coordinator acknowledges it, so a failed report can be retried with
the same delta.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from communication.mesh import PeerTransport
from core.model import ParameterDelta
from worker.coordinator_client import CoordinatorClient
from worker.errors import ReportError
from worker.identity import WorkerIdentity


logger = logging.getLogger(__name__)


class ProtocolHook:
    """
    Extension point for collaboration protocol steps run before reporting.

    The default does nothing. A secure aggregation protocol would mask the
    delta here, exchanging shares with peers over the transport.
    """

    async def before_report(
        self,
        delta: ParameterDelta,
        transport: Optional[PeerTransport]
    ) -> ParameterDelta:
        return delta


class ReportingSink:
    """
    Accepts a round's delta and reports it upstream.
    """

    def __init__(
        self,
        coordinator_client: CoordinatorClient,
        identity: WorkerIdentity,
        hook: Optional[ProtocolHook] = None,
        transport: Optional[PeerTransport] = None,
        timeout: Optional[float] = None
    ):
        """
        Initialize reporting sink.

        Args:
            coordinator_client: Client used for the report call
            identity: Reporting worker
            hook: Protocol step run before the report
            transport: Peer transport available to the hook
            timeout: Overall time limit for one report, in seconds
        """
        self.coordinator_client = coordinator_client
        self.identity = identity
        self.hook = hook or ProtocolHook()
        self.transport = transport
        self.timeout = timeout

        self._total_reported = 0
        self._failed_reports = 0

    async def report(self, delta: ParameterDelta) -> Dict[str, Any]:
        """
        Report a delta.

        Args:
            delta: Delta to report; must not have been reported already

        Returns:
            Acknowledgment from the coordinator

        Raises:
            ReportError: If the hook or coordinator rejects the delta, the
                report times out, or the hook raises. The error carries the delta.
        """
        if delta.reported:
            raise ReportError("Delta was already reported", delta=delta)

        try:
            prepared = await self.hook.before_report(delta, self.transport)
            ack = await asyncio.wait_for(
                self.coordinator_client.report(self.identity, prepared),
                timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            self._failed_reports += 1
            logger.error(f"Report timed out after {self.timeout}s")
            raise ReportError(f"Report timed out after {self.timeout}s", delta=delta, cause=e) from e
        except (httpx.HTTPError, ValueError) as e:
            self._failed_reports += 1
            logger.error(f"Report failed: {e}")
            raise ReportError(f"Report failed: {e}", delta=delta, cause=e) from e
        except Exception as e:
            self._failed_reports += 1
            logger.error(f"Report step failed: {e}")
            raise ReportError(f"Report step failed: {e}", delta=delta, cause=e) from e

        delta.mark_reported()
        self._total_reported += 1
        return ack

    def get_status(self) -> dict:
        return {
            'total_reported': self._total_reported,
            'failed_reports': self._failed_reports
        }
