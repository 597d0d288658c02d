"""End-to-end workflows driven through the command-line entry points.

Each scenario runs the CLI against a real workbook on disk, so the data
access, business logic and presentation layers are exercised together.
"""

from __future__ import annotations

import re
from datetime import date, timedelta

from pos_credit import cli, core_logic, data_manager, setup_excel


def _run(config_path, *argv):
    return cli.main(["--config", str(config_path), *argv])


def _seed(config_path):
    assert _run(config_path, "add-product", "--product-id", "P1", "--product-name", "Kettle", "--unit-price", "10000") == 0
    assert _run(config_path, "add-customer", "--customer-id", "C1", "--customer-name", "Ada", "--credit-limit", "500000") == 0


def _stored_balance(bundle, customer_id):
    workbook = data_manager.open_workbook(bundle.workbook_path)
    return data_manager.read_customer(workbook, customer_id).outstanding_balance


def test_setup_script_bootstraps_workbook_from_config(config_factory, capsys):
    bundle = config_factory()
    bundle.workbook_path.unlink()

    assert setup_excel.main(["--config", str(bundle.config_path)]) == 0
    assert bundle.workbook_path.exists()
    assert "[SUCCESS]" in capsys.readouterr().out

    assert setup_excel.main(["--config", str(bundle.config_path)]) == 1
    assert setup_excel.main(["--config", str(bundle.config_path), "--force"]) == 0


def test_seeding_commands_persist_to_disk(config_factory):
    bundle = config_factory()

    _seed(bundle.config_path)

    workbook = data_manager.open_workbook(bundle.workbook_path)
    assert [row.product_id for row in data_manager.iter_products(workbook)] == ["P1"]
    assert data_manager.read_customer(workbook, "C1").credit_limit == 500000


def test_duplicate_seed_returns_business_rule_code(config_factory):
    bundle = config_factory()
    _seed(bundle.config_path)

    code = _run(bundle.config_path, "add-customer", "--customer-id", "C1", "--customer-name", "Ada", "--credit-limit", "1")

    assert code == 2


def test_credit_sale_payment_and_reports_flow(config_factory, capsys):
    bundle = config_factory()
    _seed(bundle.config_path)
    capsys.readouterr()

    assert _run(
        bundle.config_path,
        "checkout",
        "--item", "P1:10",
        "--plan", "credit",
        "--months", "6",
        "--customer-id", "C1",
        "--include-tax",
    ) == 0
    checkout_out = capsys.readouterr().out
    transaction_id = re.search(r"Transaction (\S+)", checkout_out).group(1)
    assert "127440" in checkout_out
    assert _stored_balance(bundle, "C1") == 127440

    assert _run(bundle.config_path, "pay", "--transaction-id", transaction_id, "--amount", "27440") == 0
    assert "balance now 100000" in capsys.readouterr().out
    assert _stored_balance(bundle, "C1") == 100000

    assert _run(bundle.config_path, "balances") == 0
    assert re.search(r"C1\s+100000", capsys.readouterr().out)

    assert _run(bundle.config_path, "show", "--transaction-id", transaction_id) == 0
    show_out = capsys.readouterr().out
    assert "CREDIT" in show_out
    assert "P1" in show_out

    assert _run(bundle.config_path, "log") == 0
    assert transaction_id in capsys.readouterr().out

    assert _run(bundle.config_path, "summary") == 0
    assert re.search(r"payments_received\s+27440", capsys.readouterr().out)


def test_partial_sale_flow(config_factory, capsys):
    bundle = config_factory()
    _seed(bundle.config_path)
    due = (date.today() + timedelta(days=30)).isoformat()

    code = _run(
        bundle.config_path,
        "checkout",
        "--item", "P1:10",
        "--plan", "partial",
        "--method", "cash",
        "--percentage", "50",
        "--due-date", due,
        "--customer-id", "C1",
        "--include-tax",
        "--accept-terms",
    )

    assert code == 0
    assert _stored_balance(bundle, "C1") == 59000


def test_rejected_checkout_returns_business_rule_code_and_writes_nothing(config_factory):
    bundle = config_factory()
    _seed(bundle.config_path)

    code = _run(bundle.config_path, "checkout", "--item", "P1:10", "--plan", "credit", "--months", "9")

    assert code == 2
    workbook = data_manager.open_workbook(bundle.workbook_path)
    assert list(data_manager.iter_transactions(workbook)) == []


def test_unknown_product_returns_business_rule_code(config_factory):
    bundle = config_factory()
    _seed(bundle.config_path)

    assert _run(bundle.config_path, "checkout", "--item", "NOPE:1", "--method", "cash") == 2


def test_commit_failure_returns_commit_code(config_factory, monkeypatch):
    bundle = config_factory()
    _seed(bundle.config_path)

    def _fail(workbook, destination):
        raise OSError("disk full")

    monkeypatch.setattr(data_manager, "save_workbook", _fail)

    code = _run(bundle.config_path, "checkout", "--item", "P1:1", "--method", "cash")

    assert code == 4


def test_schema_mismatch_returns_generic_code(config_factory):
    bundle = config_factory(schema_version="2.0.0")

    assert _run(bundle.config_path, "balances") == 1


def test_relative_data_file_resolves_next_to_config(config_factory):
    bundle = config_factory(make_relative=True)

    context = core_logic.load_runtime_context(bundle.config_path)

    assert context.settings.data_file == bundle.workbook_path.resolve()


def test_payments_are_capped_per_sale_and_drive_open_balances(config_factory, capsys):
    bundle = config_factory()
    _seed(bundle.config_path)
    assert _run(
        bundle.config_path,
        "checkout",
        "--item", "P1:10",
        "--plan", "credit",
        "--months", "3",
        "--customer-id", "C1",
    ) == 0
    transaction_id = re.search(r"Transaction (\S+)", capsys.readouterr().out).group(1)

    assert _run(bundle.config_path, "pay", "--transaction-id", "T-missing", "--amount", "10") == 2
    assert _run(bundle.config_path, "pay", "--transaction-id", transaction_id, "--amount", "105001") == 2
    assert _run(bundle.config_path, "pay", "--transaction-id", transaction_id, "--amount", "5000") == 0
    capsys.readouterr()

    assert _run(bundle.config_path, "open-balances") == 0
    line = capsys.readouterr().out.strip()
    assert line.startswith(transaction_id)
    assert re.search(r"C1\s+\d{4}-\d{2}-\d{2}\s+100000$", line)

    assert _run(bundle.config_path, "open-balances", "--overdue") == 0
    assert capsys.readouterr().out == ""

    assert _run(bundle.config_path, "open-balances", "--overdue", "--as-of", "2099-01-01") == 0
    assert "OVERDUE" in capsys.readouterr().out

    assert _run(bundle.config_path, "pay", "--transaction-id", transaction_id, "--amount", "100000") == 0
    capsys.readouterr()
    assert _run(bundle.config_path, "open-balances", "--as-of", "2099-01-01") == 0
    assert capsys.readouterr().out == ""
