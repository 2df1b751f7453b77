import os
import json
from typing import Any, Dict, List

from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    # Unknown values are ignored; the current mode stays
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_loans_result(loans: List[Dict[str, Any]]) -> None:
    """Print loan rows in the current output mode.
    - plain: one '#id Title (label) due ... [status]' line per loan
    - json: JSON array of the loan dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(loans, ensure_ascii=False))
        return
    if not loans:
        print("No loans.")
        return

    if mode == "rich":
        table = Table(title="Loans", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Copy", style="white")
        table.add_column("Due", style="white")
        table.add_column("Status", style="white")
        table.add_column("Fine", style="red")
        for loan in loans:
            status = "overdue" if loan.get("overdue") else loan.get("status", "")
            table.add_row(
                str(loan.get("id", "")),
                loan.get("title", ""),
                loan.get("inventory_label", ""),
                (loan.get("due_at") or "")[:10],
                status,
                str(loan.get("fine") or ""),
            )
        _console.print(table)
    else:
        for loan in loans:
            status = "overdue" if loan.get("overdue") else loan.get("status", "")
            line = f"#{loan.get('id')} {loan.get('title')} ({loan.get('inventory_label')}) due {(loan.get('due_at') or '')[:10]} [{status}]"
            if loan.get("fine"):
                line += f" fine: {loan['fine']}"
            print(line)


def print_fines_result(fines: List[Dict[str, Any]]) -> None:
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(fines, ensure_ascii=False))
        return
    if not fines:
        print("No fines.")
        return

    if mode == "rich":
        table = Table(title="Fines", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("User", style="white")
        table.add_column("Title", style="white")
        table.add_column("Amount", style="red")
        table.add_column("Status", style="white")
        for f in fines:
            table.add_row(str(f["id"]), str(f.get("user_id", "")), f.get("title", ""), str(f["amount"]), f["status"])
        _console.print(table)
    else:
        for f in fines:
            print(f"#{f['id']} user {f.get('user_id')} {f.get('title')}: {f['amount']} [{f['status']}]")


def print_result(title: str, payload: Dict[str, Any]) -> None:
    """Print a single operation result.
    - plain: 'key: value' lines under the title
    - json: JSON object
    - rich: Panel with the fields
    """
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(payload, ensure_ascii=False, default=str))
    elif mode == "rich":
        content = "\n".join(f"[bold]{k}:[/] {v}" for k, v in payload.items())
        _console.print(Panel.fit(content, title=title, border_style="blue"))
    else:
        print(title)
        for k, v in payload.items():
            print(f"{k}: {v}")


def print_error(code: str, message: str) -> None:
    if get_output_mode() == "json":
        print(json.dumps({"error": code, "detail": message}, ensure_ascii=False))
    else:
        print(f"Error [{code}]: {message}")
