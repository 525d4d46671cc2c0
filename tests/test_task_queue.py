from pathlib import Path

from foreman.workflow.sentinels import extract_decision, extract_tag, has_ok_sentinel
from foreman.workflow.steps.decision import DecisionContext
from foreman.workflow.task_metadata import attempts_remaining, get_base_task_info
from foreman.workflow.task_queue import discover_tasks, next_task_number


def _touch(directory: Path, *names: str) -> None:
    for name in names:
        (directory / name).write_text(f"# {name}\n", encoding="utf-8")


def _context(task_name: str) -> DecisionContext:
    info = get_base_task_info(task_name)
    return DecisionContext(
        base_task_path=info.base_task_path,
        base_task_name=info.base_task_name,
        remaining_remediations=attempts_remaining(info.attempt),
        remediation_path=Path(f"{info.base_task_name}-remediation-{info.attempt + 1}.md"),
        outcome_path=Path(f"outcome-{task_name}"),
    )


def test_discover_tasks_keeps_latest_remediation_and_skips_closed(tmp_path: Path) -> None:
    _touch(
        tmp_path,
        "task-1-setup.md",
        "outcome-task-1-setup.md",
        "task-2-api.md",
        "task-2-api-remediation-1.md",
        "task-2-api-remediation-2.md",
        "task-10-docs.md",
        "task-3-ui.md",
        "plan.md",
        "report-task-3-ui.md",
    )

    discovered = [path.name for path in discover_tasks(tmp_path)]

    assert discovered == ["task-2-api-remediation-2.md", "task-3-ui.md", "task-10-docs.md"]


def test_discover_tasks_drops_base_when_remediation_was_accepted(tmp_path: Path) -> None:
    _touch(
        tmp_path,
        "task-2-api.md",
        "task-2-api-remediation-1.md",
        "outcome-task-2-api-remediation-1.md",
    )

    assert discover_tasks(tmp_path) == []


def test_discover_tasks_missing_dir(tmp_path: Path) -> None:
    assert discover_tasks(tmp_path / "missing") == []


def test_next_task_number(tmp_path: Path) -> None:
    assert next_task_number(tmp_path) == 1
    _touch(tmp_path, "task-1-setup.md", "task-3-api-remediation-1.md", "outcome-task-1-setup.md")

    assert next_task_number(tmp_path) == 4


def test_base_task_info_strips_remediation_suffix(tmp_path: Path) -> None:
    info = get_base_task_info(tmp_path / "task-2-api-remediation-3.md")

    assert info.base_task_name == "task-2-api"
    assert info.base_task_path == (tmp_path / "task-2-api.md").resolve()
    assert info.attempt == 3
    assert get_base_task_info(tmp_path / "task-2-api.md").attempt == 0


def test_remediation_budget() -> None:
    assert attempts_remaining(0) == 3
    assert attempts_remaining(3) == 0
    assert attempts_remaining(5) == 0
    assert _context("task-1-x.md").allowed == ["remediation", "acceptance"]
    assert _context("task-1-x-remediation-3.md").allowed == ["failed", "acceptance"]


def test_ok_sentinel_must_end_output() -> None:
    assert has_ok_sentinel("done\n<OK>")
    assert has_ok_sentinel("<OK>\n")
    assert not has_ok_sentinel("<OK> but more text")
    assert not has_ok_sentinel("inline <OK>")
    assert not has_ok_sentinel(None)


def test_extract_tag_and_decision() -> None:
    output = "<SLUG> add caching layer </SLUG>\n<DECISION> Acceptance </DECISION>"

    assert extract_tag(output, "SLUG") == "add caching layer"
    assert extract_tag(output, "CONTENT") is None
    assert extract_decision(output, ["remediation", "acceptance"]) == "acceptance"
    assert extract_decision(output, ["failed"]) is None
