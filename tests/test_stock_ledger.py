"""
库存账本测试
"""
import asyncio

import pytest

from rastuci_core.services.stock_ledger import StockLine
from rastuci_core.utils.errors import InsufficientStockError, ValidationError


async def test_decrement_success(seeded, stock_ledger, fetch_stock):
    result = await stock_ledger.decrement("prd_remera", 2)
    assert result.success
    assert result.data["new_stock"] == 3
    assert await fetch_stock("prd_remera") == 3


async def test_decrement_variant(seeded, stock_ledger, fetch_stock):
    result = await stock_ledger.decrement("prd_remera", 1, variant_id="var_remera_m_negro")
    assert result.data["new_stock"] == 2
    assert await fetch_stock("var_remera_m_negro") == 2
    assert await fetch_stock("prd_remera") == 5


async def test_decrement_insufficient_leaves_stock(seeded, stock_ledger, fetch_stock):
    result = await stock_ledger.decrement("prd_buzo", 2)
    assert not result.success
    assert result.error_code == "INSUFFICIENT_STOCK"
    assert result.metadata == {"requested": 2, "available": 1}
    assert await fetch_stock("prd_buzo") == 1


async def test_decrement_unknown_product(seeded, stock_ledger):
    result = await stock_ledger.decrement("prd_fantasma", 1)
    assert result.error_code == "INSUFFICIENT_STOCK"
    assert result.metadata["available"] == 0


@pytest.mark.parametrize("quantity", [0, -1, 1.5, True])
async def test_rejects_invalid_quantity(seeded, stock_ledger, quantity):
    with pytest.raises(ValidationError):
        async with seeded.get_transaction() as session:
            await stock_ledger.apply_decrement(session, "prd_remera", quantity)


async def test_concurrent_decrements_never_oversell(seeded, stock_ledger, fetch_stock):
    results = await asyncio.gather(*[stock_ledger.decrement("prd_remera", 2) for _ in range(4)])
    successes = [r for r in results if r.success]
    assert len(successes) == 2
    assert await fetch_stock("prd_remera") == 1


async def test_debit_order_is_applied_once(make_order, stock_ledger, fetch_stock, fetch_order):
    order_id = await make_order(items=(("prd_remera", 2, "1000.00"), ("prd_buzo", 1, "2500.00")))

    first = await stock_ledger.debit_order(order_id)
    assert first.success
    assert first.data["already_debited"] is False
    assert len(first.data["items"]) == 2

    second = await stock_ledger.debit_order(order_id)
    assert second.success
    assert second.data["already_debited"] is True

    assert await fetch_stock("prd_remera") == 3
    assert await fetch_stock("prd_buzo") == 0
    assert (await fetch_order(order_id)).stock_decremented_at is not None


async def test_debit_order_rolls_back_all_lines(make_order, stock_ledger, fetch_stock, fetch_order):
    order_id = await make_order(items=(("prd_remera", 2, "1000.00"), ("prd_buzo", 3, "2500.00")))

    result = await stock_ledger.debit_order(order_id)
    assert not result.success
    assert result.error_code == "INSUFFICIENT_STOCK"
    assert result.error == "Stock insuficiente para prd_buzo. Disponible: 1, Solicitado: 3"

    # 第一行的扣减与幂等标记一起回滚
    assert await fetch_stock("prd_remera") == 5
    assert await fetch_stock("prd_buzo") == 1
    assert (await fetch_order(order_id)).stock_decremented_at is None


async def test_insufficient_stock_error_message(seeded, stock_ledger):
    with pytest.raises(InsufficientStockError) as exc_info:
        async with seeded.get_transaction() as session:
            await stock_ledger.apply_decrement(session, "prd_buzo", 4, name="Buzo Oversize")
    assert exc_info.value.detail == "Stock insuficiente para Buzo Oversize. Disponible: 1, Solicitado: 4"


async def test_check_availability_merges_lines(seeded, stock_ledger):
    result = await stock_ledger.check_availability([
        StockLine("prd_remera", 3, name="Remera Básica"),
        StockLine("prd_remera", 3, name="Remera Básica"),
        StockLine("prd_buzo", 1, name="Buzo Oversize"),
    ])
    assert result.success
    assert result.data["overall_available"] is False
    remera = next(item for item in result.data["items"] if item["product_id"] == "prd_remera")
    assert remera["required_qty"] == 6
    assert remera["reason"] == "Stock insuficiente para Remera Básica. Disponible: 5, Solicitado: 6"
