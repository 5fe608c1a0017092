import pytest

from conftest import HOODIE, TEE
from storefront import movements
from storefront.inventory import LineItem
from storefront.models import Movement, VariantStock


class TestRecordMovement:
    def test_after_is_before_plus_change(self, session_factory):
        with session_factory.begin() as db:
            movement = movements.record_movement(
                db,
                product_id=TEE,
                variant_key="Black-M",
                movement_type=movements.RELEASE,
                quantity_change=3,
                quantity_before=7,
                reference_id="ORD-1",
                reference_type="order",
            )
        assert movement.quantity_after == 10

    def test_unknown_type_rejected(self, session_factory):
        with session_factory() as db:
            with pytest.raises(ValueError):
                movements.record_movement(
                    db,
                    product_id=TEE,
                    variant_key="Black-M",
                    movement_type="shrinkage",
                    quantity_change=-1,
                    quantity_before=10,
                )

    def test_net_deducted_per_variant(self, manager, session_factory):
        manager.reserve(TEE, "Black-M", 2, "ORD-N1")
        manager.reserve(HOODIE, "Grey-M", 1, "ORD-N1")
        manager.confirm_reservation("ORD-N1", [LineItem(HOODIE, "Grey-M", 1)])
        with session_factory() as db:
            assert movements.net_deducted_by_variant(db, "ORD-N1") == {(TEE, "Black-M"): 2, (HOODIE, "Grey-M"): 1}

        manager.cancel_reservation("ORD-N1")
        with session_factory() as db:
            assert movements.net_deducted_by_variant(db, "ORD-N1") == {(TEE, "Black-M"): 0, (HOODIE, "Grey-M"): 1}
            assert movements.net_deducted_by_variant(db, "ORD-NONE") == {}


class TestListMovements:
    def test_filters_and_newest_first(self, manager, session_factory):
        manager.reserve(TEE, "Black-M", 1, "ORD-L1")
        manager.reserve(TEE, "White-L", 1, "ORD-L2")
        manager.cancel_reservation("ORD-L1")

        with session_factory() as db:
            black = movements.list_movements(db, product_id=TEE, variant_key="Black-M")
            assert [m.movement_type for m in black] == [movements.RELEASE, movements.RESERVE]
            assert len(movements.list_movements(db, limit=1)) == 1

    def test_serialization(self, manager, session_factory):
        manager.reserve(TEE, "Black-M", 2, "ORD-L3")
        with session_factory() as db:
            data = movements.movement_to_dict(movements.list_movements(db, reference_id="ORD-L3")[0])

        assert data["movementType"] == "reserve"
        assert (data["quantityBefore"], data["quantityAfter"]) == (10, 8)
        assert data["createdAt"].endswith("Z")


class TestReconcile:
    def test_consistent_after_normal_traffic(self, manager, session_factory):
        manager.reserve(TEE, "Black-M", 4, "ORD-C1")
        manager.reserve(TEE, "Black-M", 2, "ORD-C2")
        manager.confirm_reservation("ORD-C1")
        manager.cancel_reservation("ORD-C2")
        manager.set_stock(TEE, "Black-M", 20)

        with session_factory() as db:
            report = movements.reconcile_variant(db, TEE, "Black-M")

        assert report["consistent"], report["discrepancies"]
        assert report["ledgerQuantity"] == report["lastMovementQuantity"] == 20
        assert report["movementCount"] == 5

    def test_detects_ledger_tampering(self, manager, session_factory):
        manager.reserve(TEE, "Black-M", 4, "ORD-C3")
        with session_factory.begin() as db:
            db.query(VariantStock).filter(VariantStock.variant_key == "Black-M").update({"quantity_available": 99})

        with session_factory() as db:
            report = movements.reconcile_variant(db, TEE, "Black-M")

        assert not report["consistent"]
        assert report["discrepancies"][-1]["problem"] == "ledger mismatch"

    def test_detects_chain_break(self, manager, session_factory):
        manager.reserve(TEE, "Black-M", 1, "ORD-C4")
        with session_factory.begin() as db:
            db.add(
                Movement(
                    product_id=TEE,
                    variant_key="Black-M",
                    movement_type="reserve",
                    quantity_change=-1,
                    quantity_before=5,
                    quantity_after=4,
                )
            )

        with session_factory() as db:
            problems = [d["problem"] for d in movements.reconcile_variant(db, TEE, "Black-M")["discrepancies"]]
        assert "chain break" in problems

    def test_reconcile_all_covers_every_variant(self, session_factory):
        with session_factory() as db:
            reports = movements.reconcile_all(db)

        assert len(reports) == 4
        # Seeded rows have no movements yet, which is not a discrepancy.
        assert all(r["consistent"] for r in reports)
