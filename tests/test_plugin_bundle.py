import json

from plugin_bundle import (
    FORGET_DELAY_MS,
    export_plugin_package,
    generate_manifest,
    generate_plugin_code,
    generate_plugin_ui,
)


def test_code_points_at_bridge_port():
    code = generate_plugin_code(4000)
    assert "let BRIDGE_URL = 'http://localhost:4000';" in code
    assert f"const FORGET_DELAY = {FORGET_DELAY_MS};" in code
    assert "__" + "BRIDGE_URL__" not in code


def test_lease_flag():
    assert "const USE_LEASES = false;" in generate_plugin_code(3847)
    assert "const USE_LEASES = true;" in generate_plugin_code(3847, use_leases=True)


def test_code_guards_against_duplicate_dispatch():
    code = generate_plugin_code(3847)
    assert "executingCommands" in code
    assert "WRITABLE_PROPERTIES" in code


def test_code_reports_outcome_outside_execution():
    code = generate_plugin_code(3847)
    # A failed success-report is kept for retry, never turned into an error report
    body = code[code.index("async function pollCommands"):code.index("async function checkConnection")]
    assert "outcome = { result: await handler(cmd.params || {}) };" in body
    assert "unreported.set(cmd.id, outcome);" in body
    assert body.count("report(") == 1
    assert "await flushUnreported();" in body


def test_batch_returns_outcomes_instead_of_throwing():
    code = generate_plugin_code(3847)
    body = code[code.index("batch: async"):code.index("async function report")]
    assert "throw new Error('Batch failed" not in body
    assert "return { batchResults: results, succeeded: results.length - failed, failed };" in body


def test_ui_prefills_url():
    assert "http://localhost:3850" in generate_plugin_ui(3850)


def test_manifest():
    manifest = json.loads(generate_manifest())
    assert manifest["main"] == "code.js"
    assert manifest["ui"] == "ui.html"
    assert "http://localhost" in manifest["networkAccess"]["allowedDomains"]


def test_export_writes_three_files(tmp_path):
    target = export_plugin_package(tmp_path / "plugin", 3900, use_leases=True)
    assert sorted(p.name for p in target.iterdir()) == ["code.js", "manifest.json", "ui.html"]
    assert "http://localhost:3900" in (target / "code.js").read_text(encoding="utf-8")
