import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def make_app(tmp_path: Path, name: str = "ledger.db"):
    from stockledger.application.container import build_container

    return build_container(tmp_path / name)


def seed_stock(app, store_id: int, item_id: int, qty, tx_type: str = "Opening") -> int:
    return app.ledger.record_transaction(store_id, tx_type, [{"item_id": item_id, "qty": qty}])


def count_rows(repo, table: str) -> int:
    conn = repo._conn()
    cur = conn.cursor()
    cur.execute(f"SELECT COUNT(*) FROM {table}")
    n = int(cur.fetchone()[0])
    conn.close()
    return n
