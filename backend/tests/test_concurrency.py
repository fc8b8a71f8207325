# Overview: Threaded races against a file-backed SQLite database.

"""
Concurrency tests for the conditional-write paths.

Each worker gets its own app context (and so its own session); SQLite
serializes the writers through BEGIN IMMEDIATE.
"""
import os
import tempfile
import threading
import unittest

from tradeflow import create_app
from tradeflow.errors import AlreadyAcceptedError, InsufficientStockError
from tradeflow.extensions import db
from tradeflow.models import CreditAccount, LedgerEntry, Product, Retailer, VendorResponse, Wholesaler, WholesalerProduct
from tradeflow.services import build_services


class ConcurrencyTests(unittest.TestCase):
    VENDORS = 5

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30}},
            "TX_RETRY_ATTEMPTS": 5,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            retailer = Retailer(name="Race Kirana", is_active=True)
            product = Product(sku="RACE-1", name="Race Rice", unit="bag")
            db.session.add_all([retailer, product])
            db.session.commit()
            self.retailer_id = retailer.id
            self.product_id = product.id

            self.wholesaler_ids = []
            for i in range(self.VENDORS):
                wholesaler = Wholesaler(business_name=f"Racer {i}", reliability_score=80.0 - i, is_active=True)
                db.session.add(wholesaler)
                db.session.commit()
                db.session.add(WholesalerProduct(
                    wholesaler_id=wholesaler.id,
                    product_id=self.product_id,
                    stock=10,
                    reserved_stock=0,
                    last_counted_stock=10,
                    price_cents=100,
                ))
                db.session.add(CreditAccount(
                    retailer_id=self.retailer_id,
                    wholesaler_id=wholesaler.id,
                    credit_limit_cents=1_000_000,
                    terms_days=30,
                ))
                db.session.commit()
                self.wholesaler_ids.append(wholesaler.id)

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _services(self):
        return build_services(db.session, self.app.config, self.app.logger)

    def _order(self, services, quantity, wholesaler_id=None):
        order = services.orders.create_order(
            self.retailer_id,
            [{"product_id": self.product_id, "quantity": quantity, "unit_price_cents": 100}],
            wholesaler_id=wholesaler_id or self.wholesaler_ids[0],
        ).order
        services.orders.approve_credit(order.id)
        return order.id

    def _run(self, targets):
        threads = [threading.Thread(target=t) for t in targets]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    def test_routing_has_exactly_one_winner(self):
        with self.app.app_context():
            services = self._services()
            order_id = self._order(services, 4)
            services.orders.reserve_stock(order_id)
            routing_id = services.routing.route_order(order_id, self.wholesaler_ids).id

        winners = []
        lost = []
        errors = []
        lock = threading.Lock()

        def worker(wholesaler_id):
            def run():
                with self.app.app_context():
                    try:
                        self._services().routing.accept_vendor(routing_id, wholesaler_id)
                        with lock:
                            winners.append(wholesaler_id)
                    except AlreadyAcceptedError:
                        with lock:
                            lost.append(wholesaler_id)
                    except Exception as exc:
                        with lock:
                            errors.append(exc)
                    finally:
                        db.session.remove()
            return run

        self._run([worker(w) for w in self.wholesaler_ids])

        self.assertFalse(errors)
        self.assertEqual(len(winners), 1)
        self.assertEqual(len(lost), self.VENDORS - 1)

        with self.app.app_context():
            services = self._services()
            order = services.orders.get_order(order_id)
            self.assertEqual(order.status, "WHOLESALER_ACCEPTED")
            self.assertEqual(order.wholesaler_id, winners[0])
            history = [t.to_state for t in services.orders.get_history(order_id)]
            self.assertEqual(history.count("WHOLESALER_ACCEPTED"), 1)
            responses = db.session.query(VendorResponse).filter_by(routing_id=routing_id).all()
            self.assertEqual(sorted(r.response_type for r in responses), ["ACCEPT"] + ["LOST"] * (self.VENDORS - 1))

            reserved = {
                p.wholesaler_id: p.reserved_stock
                for p in db.session.query(WholesalerProduct).all()
            }
            self.assertEqual(reserved[winners[0]], 4)
            self.assertEqual(sum(reserved.values()), 4)

    def test_concurrent_reservations_do_not_oversell(self):
        with self.app.app_context():
            services = self._services()
            first = self._order(services, 6)
            second = self._order(services, 6)

        results = []
        lock = threading.Lock()

        def worker(order_id):
            def run():
                with self.app.app_context():
                    try:
                        self._services().orders.reserve_stock(order_id)
                        outcome = "reserved"
                    except InsufficientStockError:
                        outcome = "short"
                    except Exception as exc:
                        outcome = exc
                    finally:
                        db.session.remove()
                    with lock:
                        results.append(outcome)
            return run

        self._run([worker(first), worker(second)])

        self.assertEqual(sorted(results), ["reserved", "short"])
        with self.app.app_context():
            pos = db.session.query(WholesalerProduct).filter_by(wholesaler_id=self.wholesaler_ids[0]).one()
            self.assertEqual(pos.stock, 10)
            self.assertEqual(pos.reserved_stock, 6)

    def test_concurrent_ledger_appends_advance_sequence(self):
        w = self.wholesaler_ids[0]
        errors = []
        lock = threading.Lock()

        def worker():
            with self.app.app_context():
                try:
                    self._services().credit.create_ledger_entry(self.retailer_id, w, "DEBIT", 100)
                except Exception as exc:
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        self._run([worker for _ in range(8)])

        self.assertFalse(errors)
        with self.app.app_context():
            services = self._services()
            self.assertEqual(services.ledger.calculate_balance(self.retailer_id, w), 800)
            self.assertTrue(services.ledger.audit_pair(self.retailer_id, w)["consistent"])
            self.assertEqual(db.session.query(LedgerEntry).filter_by(wholesaler_id=w).count(), 8)
            account = db.session.query(CreditAccount).filter_by(retailer_id=self.retailer_id, wholesaler_id=w).one()
            self.assertEqual(account.ledger_sequence, 8)


if __name__ == "__main__":
    unittest.main()
