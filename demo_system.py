"""
End-to-end demo of the dose tracking pipeline against the in-memory store.

This script walks through:
1. Configuration loading and validation
2. Grace-period calculation across weekdays, weekends and holidays
3. Missed-dose sweep with family notifications
4. Take, undo and correction
5. Error handling and partial sweep results

Run with: uv run python demo_system.py
"""

import asyncio
from datetime import UTC, datetime, timedelta

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from adapters.memory.store import InMemoryDoseStore
from doseguard.config import load_config_from_env, print_config_summary
from doseguard.domain.models import (
    CorrectedAction,
    MedicationCommand,
    NotificationRule,
    ScheduledDose,
)
from doseguard.errors import UndoWindowExpired
from doseguard.services.dose_tracking import DoseTrackingService

console = Console()

PATIENT = "patient-demo"
WEDNESDAY_0800 = datetime(2024, 3, 13, 8, 0, tzinfo=UTC)


def seed_store() -> InMemoryDoseStore:
    """Two medications and a family rule for one patient."""
    store = InMemoryDoseStore()
    store.add_medication(
        MedicationCommand(
            id="cmd-lisinopril", patient_id=PATIENT, name="Lisinopril", dosage_amount="10 mg"
        )
    )
    store.add_medication(
        MedicationCommand(
            id="cmd-vitamin-d", patient_id=PATIENT, name="Vitamin D3", dosage_amount="1000 IU"
        )
    )
    store.add_rule(
        NotificationRule(
            id="rule-daughter",
            patient_id=PATIENT,
            family_member_id="family-daughter",
            critical_medications_only=True,
            methods=("sms",),
        )
    )
    return store


def add_dose(store: InMemoryDoseStore, command_id: str, scheduled: datetime) -> ScheduledDose:
    return store.add_dose(
        ScheduledDose(
            id=f"{command_id}@{scheduled.isoformat()}",
            command_id=command_id,
            patient_id=PATIENT,
            scheduled_datetime=scheduled,
        )
    )


async def demo_configuration() -> bool:
    console.print(Panel("Configuration", style="blue"))

    try:
        config = load_config_from_env()
        console.print("Configuration loaded successfully", style="green")
        print_config_summary(config)
        return True

    except Exception as e:
        console.print(f"Configuration failed: {e}", style="red")
        return False


async def demo_grace_periods() -> bool:
    console.print(Panel("Grace Periods", style="blue"))

    try:
        store = seed_store()
        service = DoseTrackingService(store)

        cases = [
            ("Weekday morning", "cmd-vitamin-d", WEDNESDAY_0800),
            ("Weekday morning, critical", "cmd-lisinopril", WEDNESDAY_0800),
            ("Saturday morning", "cmd-vitamin-d", datetime(2024, 3, 16, 8, 0, tzinfo=UTC)),
            ("Christmas morning", "cmd-vitamin-d", datetime(2024, 12, 25, 8, 0, tzinfo=UTC)),
            ("Weekday bedtime", "cmd-vitamin-d", datetime(2024, 3, 13, 22, 0, tzinfo=UTC)),
        ]

        table = Table(title="Calculated Grace Periods")
        table.add_column("Case", style="cyan")
        table.add_column("Minutes", style="green")
        table.add_column("Ends", style="yellow")
        table.add_column("Rules", style="magenta")

        for label, command_id, scheduled in cases:
            dose = add_dose(store, command_id, scheduled)
            status = await service.get_grace_period(dose.id, now=scheduled)
            table.add_row(
                label,
                str(status.grace_period_minutes),
                status.grace_period_end.strftime("%a %H:%M"),
                ", ".join(status.applied_rules),
            )

        console.print(table)
        return True

    except Exception as e:
        console.print(f"Grace period demo failed: {e}", style="red")
        return False


async def demo_missed_sweep() -> bool:
    console.print(Panel("Missed-Dose Sweep", style="blue"))

    try:
        store = seed_store()
        service = DoseTrackingService(store)
        add_dose(store, "cmd-lisinopril", WEDNESDAY_0800)
        add_dose(store, "cmd-vitamin-d", WEDNESDAY_0800)

        for minute in (29, 31):
            result = await service.run_sweep(WEDNESDAY_0800.replace(minute=minute))
            console.print(
                f"08:{minute} sweep: processed={result.processed} missed={result.missed} "
                f"notifications={result.notifications_queued}",
                style="green" if result.missed == 0 else "yellow",
            )

        for notification in store.notifications:
            console.print(
                f"Queued {notification.severity.value.upper()} {notification.method} notification "
                f"for {notification.family_member_id} ({notification.triggering_rule})"
            )

        stats = await service.missed_stats(PATIENT, now=WEDNESDAY_0800 + timedelta(hours=1))
        console.print(f"Missed in last {stats.days} days: {stats.total_missed}")
        return True

    except Exception as e:
        console.print(f"Sweep demo failed: {e}", style="red")
        return False


async def demo_take_undo_correct() -> bool:
    console.print(Panel("Take, Undo and Correct", style="blue"))

    try:
        store = seed_store()
        service = DoseTrackingService(store)
        add_dose(store, "cmd-lisinopril", WEDNESDAY_0800)
        taken_at = WEDNESDAY_0800 + timedelta(minutes=10)

        take = await service.take("cmd-lisinopril", WEDNESDAY_0800, PATIENT, now=taken_at)
        console.print(
            f"Taken: score={take.adherence_score} timing={take.timing_category.value} "
            f"undo until {take.undo_available_until:%H:%M:%S}",
            style="green",
        )

        try:
            await service.undo(
                take.event_id, "Marked by mistake", PATIENT, now=taken_at + timedelta(seconds=45)
            )
        except UndoWindowExpired as e:
            console.print(f"Undo refused: {e.to_dict()}", style="yellow")

        correction = await service.correct(
            take.event_id,
            CorrectedAction.MISSED,
            "Pill found in organizer",
            "family-daughter",
            now=taken_at + timedelta(minutes=5),
        )
        impact = correction.adherence_impact
        console.print(
            f"Corrected to {correction.dose_status.value}: "
            f"estimated adherence {impact.previous_score} -> {impact.new_score}",
            style="green",
        )

        for entry in await service.undo_history("cmd-lisinopril"):
            console.print(f"History: {entry.event_type} of {entry.original_event_id} ({entry.reason})")
        return True

    except Exception as e:
        console.print(f"Take/undo demo failed: {e}", style="red")
        return False


async def demo_error_handling() -> bool:
    console.print(Panel("Error Handling", style="blue"))

    try:
        store = seed_store()
        service = DoseTrackingService(store)
        for hour in (6, 7, 8):
            add_dose(store, "cmd-vitamin-d", WEDNESDAY_0800.replace(hour=hour))
        store.failing_config_patients.add(PATIENT)
        store.fail_commit_when = lambda write: write.batch_id.endswith("_0")

        result = await service.run_sweep(WEDNESDAY_0800 + timedelta(hours=1))

        table = Table(title="Sweep With Failures")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="white")
        table.add_row("Batches", f"{result.batches_completed}/{result.batches_total}")
        table.add_row("Errors", str(len(result.errors)))
        table.add_row("Timed Out", str(result.timed_out))
        for error in result.errors:
            table.add_row(f"Error {error.batch_id}", f"{error.kind}: {error.message}")
        console.print(table)

        store.fail_commit_when = None
        retry = await service.run_sweep(WEDNESDAY_0800 + timedelta(hours=1, minutes=15))
        console.print(
            f"Retry sweep missed={retry.missed} errors={len(retry.errors)}", style="green"
        )
        return True

    except Exception as e:
        console.print(f"Error handling demo failed: {e}", style="red")
        return False


async def run_all_demos() -> None:
    console.print(Panel("Dose Tracking - System Demo", style="bold blue"))

    demos = [
        ("Configuration", demo_configuration),
        ("Grace Periods", demo_grace_periods),
        ("Missed-Dose Sweep", demo_missed_sweep),
        ("Take/Undo/Correct", demo_take_undo_correct),
        ("Error Handling", demo_error_handling),
    ]

    results = []

    for name, demo in demos:
        console.print(f"\n{'=' * 60}")
        try:
            result = await demo()
            results.append((name, result))
        except KeyboardInterrupt:
            console.print("\nDemo interrupted by user", style="yellow")
            break
        except Exception as e:
            console.print(f"{name} failed with exception: {e}", style="red")
            results.append((name, False))

    console.print(f"\n{'=' * 60}")
    console.print(Panel("Demo Results Summary", style="bold"))

    summary_table = Table()
    summary_table.add_column("Demo", style="cyan")
    summary_table.add_column("Result", style="white")

    passed = 0
    for name, result in results:
        if result:
            summary_table.add_row(name, "PASSED")
            passed += 1
        else:
            summary_table.add_row(name, "FAILED")

    console.print(summary_table)
    console.print(f"\nResults: {passed}/{len(results)} demos passed")


if __name__ == "__main__":
    try:
        asyncio.run(run_all_demos())
    except KeyboardInterrupt:
        console.print("\nDemo stopped by user", style="yellow")
    except Exception as e:
        console.print(f"\nDemo failed: {e}", style="red")
