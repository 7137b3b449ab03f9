"""
Tests for the x402-admin CLI
"""

import json

import httpx
import pytest

from src.cli.facilitator_cli import AdminCLI

BASE = "http://facilitator.test"

JOB = {
    "job_id": "x402_abc",
    "order_id": "ORDER-1",
    "amount_usd": "10",
    "amount_atomic": "100000000",
    "status": "settled",
    "payment_method": "crypto",
    "expires_at": "2026-01-01T00:05:00+00:00",
    "updated_at": "2026-01-01T00:01:00+00:00",
    "settle_response": {"transaction": "abc123", "payer": "GPAYER"},
    "error_message": None,
    "confirmed_by": None,
}


def cli_for(handler, json_output=True) -> AdminCLI:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AdminCLI(base_url=BASE, json_output=json_output, client=client)


class TestAdminCLI:

    @pytest.mark.asyncio
    async def test_jobs_with_status_filter(self, capsys):
        seen = []

        def handler(request):
            seen.append(request.url)
            return httpx.Response(200, json={"jobs": [JOB], "count": 1})

        cli = cli_for(handler)
        data = await cli.jobs(status="settled")
        await cli.close()

        assert data["count"] == 1
        assert seen[0].path == "/api/x402/jobs"
        assert seen[0].params["status"] == "settled"
        assert json.loads(capsys.readouterr().out)["jobs"][0]["job_id"] == "x402_abc"

    @pytest.mark.asyncio
    async def test_confirm_sends_operator(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True, "status": "completed"})

        cli = cli_for(handler)
        data = await cli.confirm("x402_abc", confirmed_by="ops")
        await cli.close()

        assert data["status"] == "completed"
        assert bodies == [{"confirmedBy": "ops"}]

    @pytest.mark.asyncio
    async def test_confirm_conflict(self, capsys):
        def handler(request):
            return httpx.Response(409, json={
                "success": False,
                "error": "Cannot confirm payment in status: verified. Expected: settled",
            })

        cli = cli_for(handler)
        data = await cli.confirm("x402_abc")
        await cli.close()

        assert data["success"] is False
        assert data["status_code"] == 409
        assert "Expected: settled" in json.loads(capsys.readouterr().out)["error"]

    @pytest.mark.asyncio
    async def test_job_not_found(self):
        cli = cli_for(lambda request: httpx.Response(404, json={"detail": "Payment job x not found"}))
        data = await cli.job("x")
        await cli.close()
        assert data == {"success": False, "status_code": 404, "error": "Payment job x not found"}

    @pytest.mark.asyncio
    async def test_human_output(self, capsys):
        def handler(request):
            if request.url.path == "/health":
                return httpx.Response(200, json={
                    "status": "healthy",
                    "network": "stellar-testnet",
                    "facilitator_address": "GFAC",
                    "fiat_enabled": False,
                    "queue_depth": 0,
                    "jobs": {"settled": 1},
                })
            return httpx.Response(200, json=JOB)

        cli = cli_for(handler, json_output=False)
        await cli.health()
        await cli.order("ORDER-1")
        await cli.close()

        out = capsys.readouterr().out
        assert "stellar-testnet" in out
        assert "abc123" in out

    @pytest.mark.asyncio
    async def test_sweep(self):
        cli = cli_for(lambda request: httpx.Response(200, json={"swept": 3}))
        assert await cli.sweep() == {"swept": 3}
        await cli.close()
