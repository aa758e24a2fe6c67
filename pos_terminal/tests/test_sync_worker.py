from pos_terminal.app.errors import LedgerUnavailable
from pos_terminal.app.sync import SyncEngine
from pos_terminal.workers.sync_worker import run_once


def _queue_sale(terminal):
    terminal.carts.add_item(product_id="A")
    terminal.payment().start(5000, "cash", received=5000)
    return terminal.commit_sale()


def test_run_once_drains_and_pulls_catalog(terminal, ledger):
    _queue_sale(terminal)
    ledger.delta = {"products": [], "customers": [], "discounts": [], "next_cursor": "c-1"}
    out = run_once(terminal.sync)
    assert out["online"] is True
    assert out["sent"] == 1
    assert out["remaining"] == 0
    assert out["catalog"]["next_cursor"] == "c-1"


def test_run_once_offline_reports_backlog(terminal, ledger):
    _queue_sale(terminal)
    ledger.online = False
    out = run_once(terminal.sync)
    assert out == {"online": False, "sent": 0, "remaining": 1, "catalog": None}


class _FlakyCatalogLedger:
    def __init__(self, ledger):
        self.inner = ledger

    def post_sale(self, sale):
        return self.inner.post_sale(sale)

    def health(self, timeout=0.8):
        return {"ok": True, "error": None, "latency_ms": 1}

    def catalog_delta(self, since):
        raise LedgerUnavailable("catalog service down")


def test_catalog_failure_does_not_fail_the_pass(store, ledger, clock):
    engine = SyncEngine(store, _FlakyCatalogLedger(ledger), clock)
    out = run_once(engine)
    assert out["online"] is True
    assert out["catalog"] is None
