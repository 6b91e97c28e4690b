"""
End-to-end demo of a monitoring session against the in-memory store.

This script walks through:
1. Configuration loading and logging setup
2. Session creation and the start signal
3. Live progress from the simulated device
4. The risk report for the final reading
5. The user's session history

Run with: uv run python demo_session.py
Pick the reading with DEVICE_SCENARIO (normal, fever_tachycardia, sensor_error, partial).
"""

import asyncio

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from aura_adapters.memory.device import DeviceSimulator
from aura_adapters.memory.store import InMemoryDataStore, StaticIdentity
from aura_core.config import AppConfig, configure_logging, get_config
from aura_core.domain.models import Gender, RiskLevel, SessionInput, SessionMode, SessionView
from aura_core.services.progress import (
    MONITORING_STEPS,
    connection_status,
    current_step_index,
    report_ready,
)
from aura_core.services.reports import list_user_sessions, load_session_report
from aura_core.services.session_controller import SessionController

console = Console()

DEMO_USER_ID = "demo-user"
RISK_STYLES = {RiskLevel.LOW: "green", RiskLevel.MODERATE: "yellow", RiskLevel.HIGH: "red"}


def render_progress(view: SessionView) -> None:
    """Print one line per view change, the way the monitor screen redraws."""
    step = current_step_index(view.status_history)
    status = connection_status(view.lifecycle_state, view.status_message)
    position = f"{step + 1}/{len(MONITORING_STEPS)}" if step >= 0 else "-"
    console.print(
        f"  [{position}] {status.value:<20} {view.status_message or '...'}", style="cyan"
    )


async def run_session(config: AppConfig, store: InMemoryDataStore) -> str | None:
    """Create a session, start it and follow the device until the report is ready."""

    console.print(Panel("🩺 Monitoring Session", style="blue"))

    async with SessionController(store, StaticIdentity(DEMO_USER_ID), config.session) as controller:
        controller.add_listener(render_progress)

        created = await controller.create(
            SessionInput(
                user_name="Demo Patient", age=54, gender=Gender.OTHER, mode=SessionMode.SELF
            )
        )
        if created.is_err():
            console.print(f"❌ Could not create session: {created.unwrap_err()}", style="red")
            return None
        session = created.unwrap()

        device = DeviceSimulator(
            store,
            session.id,
            scenario=config.device.scenario,
            step_delay_seconds=config.device.step_delay_seconds,
            start_timeout_seconds=10.0,
        )
        device_run = asyncio.create_task(device.run())

        started = await controller.begin_monitoring()
        if started.is_err():
            console.print(f"❌ Could not start monitoring: {started.unwrap_err()}", style="red")
            device_run.cancel()
            return None

        device_result = await device_run
        if device_result.is_err():
            console.print(f"❌ Device run failed: {device_result.unwrap_err()}", style="red")
            return None

        while not report_ready(controller.state):
            await asyncio.sleep(0.01)

        console.print("✅ Session completed", style="green")
        return session.id


async def show_report(store: InMemoryDataStore, session_id: str) -> None:
    console.print(Panel("📋 Risk Report", style="blue"))

    result = await load_session_report(store, session_id)
    if result.is_err():
        console.print(f"❌ Report unavailable: {result.unwrap_err()}", style="red")
        return
    report = result.unwrap()
    if report.vital is None or report.risk is None:
        console.print("No vital recorded for this session", style="yellow")
        return

    vital, risk = report.vital, report.risk
    table = Table(title=f"Vitals for {report.session.user_name}")
    table.add_column("Reading", style="cyan")
    table.add_column("Value", style="white")
    table.add_column("Flag", style="magenta")
    for label, value, unit, flag in (
        ("Temperature", vital.temp, "°C", risk.flags.temp),
        ("Heart rate", vital.hr, "bpm", risk.flags.hr),
        ("SpO₂", vital.spo2, "%", risk.flags.spo2),
        ("Audio", vital.audio, "", risk.flags.audio),
    ):
        shown = "Not recorded" if value is None else f"{value:g} {unit}".strip()
        table.add_row(label, shown, flag.value)
    console.print(table)

    style = RISK_STYLES[risk.risk_level]
    console.print(f"Risk: {risk.risk_level.value} ({risk.risk_score}/100)", style=f"bold {style}")
    console.print(f"Data quality: {risk.data_quality.value} ({risk.fields_present}/3 readings)")
    console.print(f"Device tag: {vital.status.value if vital.status else 'none'}")
    console.print(risk.summary, style=style)
    for recommendation in risk.recommendations:
        console.print(f"  • {recommendation}")


async def show_history(store: InMemoryDataStore) -> None:
    console.print(Panel("🗂️ Session History", style="blue"))

    result = await list_user_sessions(store, DEMO_USER_ID)
    if result.is_err():
        console.print(f"❌ History unavailable: {result.unwrap_err()}", style="red")
        return

    table = Table()
    table.add_column("Session", style="cyan")
    table.add_column("State", style="white")
    table.add_column("Risk", style="white")
    for report in result.unwrap():
        risk = report.risk.risk_level.value if report.risk else "-"
        table.add_row(report.session.id[:8], report.session.state.value, risk)
    console.print(table)


async def main() -> None:
    config = get_config()
    configure_logging(config.logging)

    console.print(Panel("🧪 Aura Session Core - Demo", style="bold blue"))
    console.print(
        f"Environment: {config.environment}  Scenario: {config.device.scenario}", style="yellow"
    )

    store = InMemoryDataStore(simulated_latency_seconds=config.store.simulated_latency_seconds)
    session_id = await run_session(config, store)
    if session_id is None:
        return

    await show_report(store, session_id)
    await show_history(store)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        console.print("\n⏹️  Demo interrupted by user", style="yellow")
