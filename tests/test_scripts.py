from code_format import CodeType
from generate_codes import export_codes, parse_args


def test_parse_args_defaults():
    args = parse_args([])
    assert args.count == 10
    assert args.type is CodeType.CUSTOMER
    assert args.notes is None


def test_parse_args_positional():
    args = parse_args(["25", "influencer", "creator pack"])
    assert args.count == 25
    assert args.type is CodeType.INFLUENCER
    assert args.notes == "creator pack"


def test_export_codes(tmp_path):
    path = export_codes(["CODE-1", "CODE-2"], CodeType.INFLUENCER, "BATCH_1", tmp_path)

    text = path.read_text(encoding="utf-8")
    assert path.name.startswith("generated-codes-influencer-")
    assert "# Type: INFLUENCER" in text
    assert "# Batch: BATCH_1" in text
    assert "# Count: 2" in text
    assert "used 5 time(s)" in text
    assert text.splitlines()[-2:] == ["CODE-1", "CODE-2"]


def test_create_tables_is_idempotent(tmp_path):
    from create_tables import create_tables

    url = f"sqlite:///{tmp_path / 'fresh.db'}"
    assert set(create_tables(url)) == {
        "premium_codes",
        "premium_code_devices",
        "activation_logs",
        "rate_limit_buckets",
    }
    assert create_tables(url) == []


def test_generate_codes_main(tmp_path, engine, session_factory, monkeypatch, capsys):
    import generate_codes
    from store import RecordStore

    monkeypatch.setattr(generate_codes, "engine", engine)
    monkeypatch.setattr(generate_codes, "SessionLocal", session_factory)

    assert generate_codes.main(["4", "promo", "--batch", "B-7", "--out-dir", str(tmp_path)]) == 0

    out = capsys.readouterr().out
    assert "Generated 4 promo codes" in out
    assert "Total codes in system: 4" in out
    [export] = tmp_path.glob("generated-codes-promo-*.txt")
    codes = export.read_text(encoding="utf-8").splitlines()[-4:]
    store = RecordStore(session_factory)
    assert all(store.get(code).batch == "B-7" for code in codes)
