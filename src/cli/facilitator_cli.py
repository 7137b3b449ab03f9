#!/usr/bin/env python3
"""
x402-admin: operator CLI for the x402 facilitator
Inspect payment jobs, confirm settled payments and trigger sweeps.

Usage:
    x402-admin health [--json]
    x402-admin jobs [--status settled] [--json]
    x402-admin job <job_id> [--json]
    x402-admin order <order_id> [--json]
    x402-admin confirm <job_id> [--by alice]
    x402-admin sweep
"""

import argparse
import asyncio
import json as json_lib
import sys
from typing import Optional

import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from src.config import get_facilitator_config

console = Console()

STATUS_COLORS = {
    "payment_required": "yellow",
    "payment_received": "cyan",
    "verifying": "cyan",
    "verified": "blue",
    "settling": "blue",
    "settled": "green",
    "completed": "bold green",
    "failed": "red",
    "expired": "dim",
}


class AdminCLI:
    """Thin async client over the facilitator admin API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        json_output: bool = False,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if base_url is None:
            base_url = f"http://localhost:{get_facilitator_config().port}"
        self.base_url = base_url.rstrip("/")
        self.json_output = json_output
        self.client = client or httpx.AsyncClient(timeout=30.0)

    def _output(self, data: dict, human_message: str = None):
        """Output data in JSON or human-readable format"""
        if self.json_output:
            print(json_lib.dumps(data, indent=2, default=str))
        elif human_message:
            console.print(human_message)

    def _error(self, response: httpx.Response) -> dict:
        try:
            body = response.json()
        except ValueError:
            body = {"detail": response.text}
        message = body.get("error") or body.get("detail") or f"HTTP {response.status_code}"
        error = {"success": False, "status_code": response.status_code, "error": message}
        self._output(error, f"[red]✗ {message}[/red]")
        return error

    async def health(self) -> dict:
        response = await self.client.get(f"{self.base_url}/health")
        if response.status_code != 200:
            return self._error(response)
        data = response.json()

        if self.json_output:
            self._output(data)
            return data

        color = "green" if data["status"] == "healthy" else "yellow"
        lines = [
            f"[bold]Status:[/bold] [{color}]{data['status']}[/{color}]",
            f"[bold]Network:[/bold] {data['network']}",
            f"[bold]Facilitator:[/bold] {data.get('facilitator_address') or '[dim]not configured[/dim]'}",
            f"[bold]Fiat:[/bold] {'enabled' if data.get('fiat_enabled') else 'disabled'}",
            f"[bold]Queue depth:[/bold] {data['queue_depth']}",
        ]
        console.print(Panel("\n".join(lines), title="x402 Facilitator", border_style=color))

        table = Table(show_header=True, header_style="bold")
        table.add_column("Status")
        table.add_column("Jobs", justify="right")
        for name, count in data["jobs"].items():
            table.add_row(f"[{STATUS_COLORS.get(name, 'white')}]{name}[/]", str(count))
        console.print(table)
        return data

    async def jobs(self, status: Optional[str] = None) -> dict:
        params = {"status": status} if status else None
        response = await self.client.get(f"{self.base_url}/api/x402/jobs", params=params)
        if response.status_code != 200:
            return self._error(response)
        data = response.json()

        if self.json_output:
            self._output(data)
            return data

        if not data["jobs"]:
            console.print("[dim]No payment jobs[/dim]")
            return data

        table = Table(title=f"Payment jobs ({data['count']})", show_header=True, header_style="bold")
        table.add_column("Job ID", style="cyan")
        table.add_column("Order")
        table.add_column("USD", justify="right")
        table.add_column("Status")
        table.add_column("Method")
        table.add_column("Updated")
        for job in data["jobs"]:
            color = STATUS_COLORS.get(job["status"], "white")
            table.add_row(
                job["job_id"],
                job["order_id"],
                job["amount_usd"],
                f"[{color}]{job['status']}[/]",
                job.get("payment_method") or "-",
                job["updated_at"],
            )
        console.print(table)
        return data

    def _print_job(self, job: dict):
        color = STATUS_COLORS.get(job["status"], "white")
        settle = job.get("settle_response") or {}
        lines = [
            f"[bold]Order:[/bold] {job['order_id']}",
            f"[bold]Status:[/bold] [{color}]{job['status']}[/]",
            f"[bold]Amount:[/bold] ${job['amount_usd']} ({job['amount_atomic']} stroops)",
            f"[bold]Method:[/bold] {job.get('payment_method') or '-'}",
            f"[bold]Expires:[/bold] {job['expires_at']}",
        ]
        if settle.get("transaction"):
            lines.append(f"[bold]Transaction:[/bold] {settle['transaction']}")
        if settle.get("payer"):
            lines.append(f"[bold]Payer:[/bold] {settle['payer']}")
        if job.get("confirmed_by"):
            lines.append(f"[bold]Confirmed by:[/bold] {job['confirmed_by']} at {job['confirmed_at']}")
        if job.get("error_message"):
            lines.append(f"[red]{job['error_message']}[/red]")
        console.print(Panel("\n".join(lines), title=f"Job {job['job_id']}", border_style=color))

    async def job(self, job_id: str) -> dict:
        response = await self.client.get(f"{self.base_url}/api/x402/jobs/{job_id}")
        if response.status_code != 200:
            return self._error(response)
        data = response.json()
        if self.json_output:
            self._output(data)
        else:
            self._print_job(data)
        return data

    async def order(self, order_id: str) -> dict:
        response = await self.client.get(f"{self.base_url}/api/x402/jobs/order/{order_id}")
        if response.status_code != 200:
            return self._error(response)
        data = response.json()
        if self.json_output:
            self._output(data)
        else:
            self._print_job(data)
        return data

    async def confirm(self, job_id: str, confirmed_by: Optional[str] = None) -> dict:
        response = await self.client.post(
            f"{self.base_url}/api/x402/jobs/{job_id}/confirm",
            json={"confirmedBy": confirmed_by},
        )
        if response.status_code != 200:
            return self._error(response)
        data = response.json()
        message = f"[green]✓ Payment confirmed[/green] {job_id}"
        if data.get("block_explorer_url"):
            message += f"\n  {data['block_explorer_url']}"
        self._output(data, message)
        return data

    async def sweep(self) -> dict:
        response = await self.client.post(f"{self.base_url}/api/x402/jobs/sweep")
        if response.status_code != 200:
            return self._error(response)
        data = response.json()
        self._output(data, f"[green]✓ Swept {data['swept']} job(s)[/green]")
        return data

    async def close(self):
        await self.client.aclose()


def main():
    parser = argparse.ArgumentParser(
        prog="x402-admin",
        description="x402 Facilitator admin CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  x402-admin health
  x402-admin jobs --status settled
  x402-admin confirm x402_1234 --by ops
  x402-admin order ORDER-1 --json
        """
    )

    parser.add_argument("--json", "-j", action="store_true", help="Output in JSON format")
    parser.add_argument("--url", help="Facilitator base URL (default http://localhost:<PORT>)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("health", help="Show facilitator health")

    jobs_parser = subparsers.add_parser("jobs", help="List payment jobs")
    jobs_parser.add_argument("--status", "-s", choices=list(STATUS_COLORS), help="Filter by status")

    job_parser = subparsers.add_parser("job", help="Show one payment job")
    job_parser.add_argument("job_id", help="Job ID")

    order_parser = subparsers.add_parser("order", help="Show the payment job for an order")
    order_parser.add_argument("order_id", help="Order ID")

    confirm_parser = subparsers.add_parser("confirm", help="Confirm a settled payment")
    confirm_parser.add_argument("job_id", help="Job ID")
    confirm_parser.add_argument("--by", dest="confirmed_by", help="Operator name")

    subparsers.add_parser("sweep", help="Remove failed/expired jobs past retention")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    async def run() -> dict:
        cli = AdminCLI(base_url=args.url, json_output=args.json)
        try:
            if args.command == "health":
                return await cli.health()
            elif args.command == "jobs":
                return await cli.jobs(args.status)
            elif args.command == "job":
                return await cli.job(args.job_id)
            elif args.command == "order":
                return await cli.order(args.order_id)
            elif args.command == "confirm":
                return await cli.confirm(args.job_id, args.confirmed_by)
            elif args.command == "sweep":
                return await cli.sweep()
        except httpx.HTTPError as e:
            cli._output({"success": False, "error": str(e)}, f"[red]✗ Cannot reach facilitator: {e}[/red]")
            return {"success": False}
        finally:
            await cli.close()

    result = asyncio.run(run())
    if isinstance(result, dict) and result.get("success") is False:
        sys.exit(1)


if __name__ == "__main__":
    main()
