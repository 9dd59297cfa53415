"""
Unit tests for the reporting sink.
"""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest
import torch

from core.model import ParameterDelta
from worker.coordinator_client import CoordinatorClient
from worker.errors import ReportError
from worker.identity import WorkerIdentity, Role
from worker.reporting import ReportingSink, ProtocolHook


IDENTITY = WorkerIdentity(worker_id="w1", scope_id="s1", role=Role.PARTICIPANT)


def make_delta() -> ParameterDelta:
    return ParameterDelta("mlp", 0, ("w",), (torch.ones(2),))


@pytest.fixture
def coordinator():
    client = AsyncMock(spec=CoordinatorClient)
    client.report.return_value = {"status": "accepted"}
    return client


class TestReportingSink:
    """Test delta reporting."""

    @pytest.mark.asyncio
    async def test_report_marks_delta(self, coordinator):
        sink = ReportingSink(coordinator, IDENTITY)
        delta = make_delta()

        ack = await sink.report(delta)

        assert ack == {"status": "accepted"}
        assert delta.reported
        coordinator.report.assert_awaited_once_with(IDENTITY, delta)
        assert sink.get_status() == {'total_reported': 1, 'failed_reports': 0}

    @pytest.mark.asyncio
    async def test_already_reported(self, coordinator):
        sink = ReportingSink(coordinator, IDENTITY)
        delta = make_delta()
        delta.mark_reported()

        with pytest.raises(ReportError) as exc_info:
            await sink.report(delta)

        assert exc_info.value.delta is delta
        coordinator.report.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_http_error_keeps_delta_unreported(self, coordinator):
        coordinator.report.side_effect = httpx.ConnectError("down")
        sink = ReportingSink(coordinator, IDENTITY)
        delta = make_delta()

        with pytest.raises(ReportError) as exc_info:
            await sink.report(delta)

        assert not delta.reported
        assert exc_info.value.delta is delta
        assert isinstance(exc_info.value.cause, httpx.ConnectError)
        assert sink.get_status()['failed_reports'] == 1

        coordinator.report.side_effect = None
        await sink.report(delta)
        assert delta.reported

    @pytest.mark.asyncio
    async def test_timeout(self, coordinator):
        async def hang(identity, delta):
            await asyncio.sleep(1.0)

        coordinator.report.side_effect = hang
        sink = ReportingSink(coordinator, IDENTITY, timeout=0.01)

        with pytest.raises(ReportError, match="timed out"):
            await sink.report(make_delta())

    @pytest.mark.asyncio
    async def test_protocol_hook_transforms_delta(self, coordinator):
        masked = make_delta()

        class MaskingHook(ProtocolHook):
            async def before_report(self, delta, transport):
                return masked

        sink = ReportingSink(coordinator, IDENTITY, hook=MaskingHook())
        delta = make_delta()
        await sink.report(delta)

        coordinator.report.assert_awaited_once_with(IDENTITY, masked)
        assert delta.reported

    @pytest.mark.asyncio
    async def test_hook_error_keeps_delta_unreported(self, coordinator):
        class FailingHook(ProtocolHook):
            async def before_report(self, delta, transport):
                raise RuntimeError("masking peers unavailable")

        sink = ReportingSink(coordinator, IDENTITY, hook=FailingHook())
        delta = make_delta()

        with pytest.raises(ReportError) as exc_info:
            await sink.report(delta)

        assert not delta.reported
        assert exc_info.value.delta is delta
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert sink.get_status()['failed_reports'] == 1
        coordinator.report.assert_not_awaited()
