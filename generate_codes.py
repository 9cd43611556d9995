# generate_codes.py
import argparse
import logging
from datetime import datetime, timezone
from pathlib import Path

from code_format import CodeType
from db import SessionLocal, engine
from issuance import IssuanceService
from models import Base
from policies import policy_for
from settings import settings
from store import RecordStore

log = logging.getLogger("generate_codes")


def export_codes(codes: list[str], code_type: CodeType, batch_id: str, directory: Path) -> Path:
    now = datetime.now(timezone.utc)
    path = directory / f"generated-codes-{code_type.value}-{now.date().isoformat()}.txt"
    lines = [
        "# CarMaster Premium Codes",
        f"# Type: {code_type.value.upper()}",
        f"# Generated: {now.isoformat()}",
        f"# Batch: {batch_id}",
        f"# Count: {len(codes)}",
        "",
        "# IMPORTANT: Keep these codes secure!",
        f"# Each code can only be used {policy_for(code_type).max_uses} time(s)",
        "",
        *codes,
    ]
    path.write_text("\n".join(lines), encoding="utf-8")
    return path


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate a batch of premium codes.")
    parser.add_argument("count", type=int, nargs="?", default=10)
    parser.add_argument("type", type=CodeType, nargs="?", default=CodeType.CUSTOMER,
                        choices=list(CodeType), metavar="type")
    parser.add_argument("notes", nargs="?", default=None)
    parser.add_argument("--batch", default=None)
    parser.add_argument("--out-dir", type=Path, default=Path("."))
    return parser.parse_args(argv)


def main(argv=None) -> int:
    logging.basicConfig(level=settings.log_level, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    settings.validate()
    args = parse_args(argv)

    Base.metadata.create_all(bind=engine)
    store = RecordStore(SessionLocal)
    issuance = IssuanceService(store, secret_key=settings.master_key, prefix=settings.code_prefix)

    batch_id = args.batch or f"BATCH_{int(datetime.now(timezone.utc).timestamp() * 1000)}"
    codes = issuance.issue_batch(args.count, args.type, notes=args.notes, batch=batch_id)
    path = export_codes(codes, args.type, batch_id, args.out_dir)
    log.info("Exported %d codes to %s", len(codes), path)

    print(f"Generated {len(codes)} {args.type.value} codes")
    for code in codes[:3]:
        print(f"   {code}")
    if len(codes) > 3:
        print(f"   ... and {len(codes) - 3} more in {path}")

    summary = store.summary()
    usage = (summary.total_used / summary.total_codes * 100) if summary.total_codes else 0.0
    print(f"Total codes in system: {summary.total_codes}")
    print(f"Usage rate: {usage:.1f}%")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
