import asyncio
from decimal import Decimal

import pytest
from sqlmodel import Session

from mesas.config import Modo
from mesas.db import sql_stores
from mesas.errors import (
    FinalizacaoCancelada,
    PartialCommitError,
    PreconditionError,
    RemoteWriteError,
    ValidationError,
)
from mesas.finalization import DadosFechamento, Etapa, FinalizacaoVenda, PoliticaFinalizacao
from mesas.models import (
    Caixa,
    FormaPagamento,
    ItemVenda,
    LancamentoCaixa,
    Mesa,
    StatusMesa,
    StatusVenda,
    TipoLancamento,
    Venda,
)
from mesas.service import PontoDeVenda

from conftest import MESA_1, MESA_2, Spy, rows, run


def _abrir_com_itens(pdv, *itens):
    sessao = run(pdv.open_table(1, MESA_1, operator_name="Ana"))
    for item in itens:
        run(pdv.add_item(sessao.venda.id, **item))
    return sessao


ITEM_50 = {"product_code": "P1", "product_name": "Açaí 500ml", "quantity": 5, "unit_price": "10.00"}


def _venda(engine, venda_id):
    return next(v for v in rows(engine, Venda) if v.id == venda_id)


def _mesa(engine, mesa_id=MESA_1):
    return next(m for m in rows(engine, Mesa) if m.id == mesa_id)


def test_finalize_with_discount_books_cash_entry(pdv, engine):
    sessao = _abrir_com_itens(pdv, ITEM_50)
    dados = DadosFechamento(payment_type=FormaPagamento.DINHEIRO, discount=Decimal("5.00"), customer_name="João")
    resultado = run(pdv.finalize_sale(sessao.venda.id, dados))

    assert resultado.venda.status == StatusVenda.FECHADA
    assert resultado.venda.subtotal == Decimal("50.00")
    assert resultado.venda.total_amount == Decimal("45.00")
    assert resultado.venda.closed_at is not None
    assert resultado.avisos == []

    entries = rows(engine, LancamentoCaixa)
    assert len(entries) == 1
    assert entries[0].amount == Decimal("45.00")
    assert entries[0].type == TipoLancamento.INCOME
    assert entries[0].payment_method == FormaPagamento.DINHEIRO
    assert entries[0].description == f"Venda Mesa #1 - Venda #{sessao.venda.sale_number}"

    mesa = _mesa(engine)
    assert mesa.status == StatusMesa.AGUARDANDO_CONTA
    assert mesa.current_sale_id is None
    assert _venda(engine, sessao.venda.id).status == StatusVenda.FECHADA


def test_items_are_persisted_in_cart_order(pdv, engine):
    sessao = _abrir_com_itens(
        pdv,
        {"product_code": "Z", "product_name": "Suco", "unit_price": "8"},
        {"product_code": "KG", "product_name": "Self-service", "weight_kg": "0.35", "price_per_gram": "0.06"},
        {"product_code": "A", "product_name": "Água", "quantity": 2, "unit_price": "4"},
    )
    run(pdv.finalize_sale(sessao.venda.id, DadosFechamento(payment_type=FormaPagamento.PIX)))
    itens = sorted(rows(engine, ItemVenda), key=lambda i: i.line_index)
    assert [i.product_code for i in itens] == ["Z", "KG", "A"]
    assert [i.subtotal for i in itens] == [Decimal("8.00"), Decimal("21.00"), Decimal("8.00")]
    assert all(i.sale_id == sessao.venda.id for i in itens)
    assert _venda(engine, sessao.venda.id).total_amount == Decimal("37.00")


def test_finalize_without_open_register(engine_sem_caixa):
    pdv = PontoDeVenda(modo=Modo.DEMO, stores=sql_stores(engine_sem_caixa), politica=PoliticaFinalizacao())
    sessao = _abrir_com_itens(pdv, ITEM_50)
    resultado = run(pdv.finalize_sale(sessao.venda.id, DadosFechamento(payment_type=FormaPagamento.DINHEIRO)))

    assert resultado.venda.status == StatusVenda.FECHADA
    assert resultado.lancamento is None
    assert len(resultado.avisos) == 1
    assert rows(engine_sem_caixa, LancamentoCaixa) == []
    assert _mesa(engine_sem_caixa).status == StatusMesa.AGUARDANDO_CONTA


def test_most_recent_open_register_is_used(pdv, engine):
    with Session(engine) as s:
        s.add(Caixa(id="caixa-novo", store_id=1))
        s.commit()
    sessao = _abrir_com_itens(pdv, ITEM_50)
    resultado = run(pdv.finalize_sale(sessao.venda.id, DadosFechamento(payment_type=FormaPagamento.DINHEIRO)))
    assert resultado.lancamento.register_id == "caixa-novo"


def test_empty_cart_is_rejected_without_writes(stores, engine):
    spies = {name: Spy(getattr(stores, name)) for name in ("mesas", "vendas", "itens", "caixa")}
    for name, spy in spies.items():
        setattr(stores, name, spy)
    pdv = PontoDeVenda(modo=Modo.DEMO, stores=stores, politica=PoliticaFinalizacao())
    sessao = run(pdv.open_table(1, MESA_1))
    for spy in spies.values():
        spy.calls.clear()

    with pytest.raises(ValidationError):
        run(pdv.finalize_sale(sessao.venda.id, DadosFechamento(payment_type=FormaPagamento.DINHEIRO)))

    assert all(spy.calls == [] for spy in spies.values())
    assert _venda(engine, sessao.venda.id).status == StatusVenda.ABERTA
    assert _mesa(engine).status == StatusMesa.OCUPADA
    assert rows(engine, ItemVenda) == []
    assert rows(engine, LancamentoCaixa) == []
    # a sessão continua editável
    run(pdv.add_item(sessao.venda.id, **ITEM_50))


@pytest.mark.parametrize(
    "dados",
    [
        DadosFechamento(payment_type=FormaPagamento.DINHEIRO, discount=Decimal("60")),
        DadosFechamento(payment_type=FormaPagamento.DINHEIRO, discount=Decimal("-1")),
        DadosFechamento(payment_type=FormaPagamento.DINHEIRO, amount_received=Decimal("10")),
        DadosFechamento(payment_type=FormaPagamento.DINHEIRO, customer_count=0),
        DadosFechamento(payment_type="dinheiro"),
    ],
)
def test_invalid_checkout_data(pdv, engine, dados):
    sessao = _abrir_com_itens(pdv, ITEM_50)
    with pytest.raises(ValidationError):
        run(pdv.finalize_sale(sessao.venda.id, dados))
    assert _venda(engine, sessao.venda.id).status == StatusVenda.ABERTA


def test_change_from_amount_received(pdv):
    sessao = _abrir_com_itens(pdv, ITEM_50)
    dados = DadosFechamento(payment_type=FormaPagamento.DINHEIRO, amount_received=Decimal("100"))
    resultado = run(pdv.finalize_sale(sessao.venda.id, dados))
    assert resultado.venda.change_amount == Decimal("50.00")


def test_cleaning_policy(stores, engine):
    pdv = PontoDeVenda(
        modo=Modo.DEMO, stores=stores, politica=PoliticaFinalizacao(status_pos_venda=StatusMesa.LIMPEZA)
    )
    sessao = _abrir_com_itens(pdv, ITEM_50)
    run(pdv.finalize_sale(sessao.venda.id, DadosFechamento(payment_type=FormaPagamento.DINHEIRO)))
    assert _mesa(engine).status == StatusMesa.LIMPEZA


def test_policy_rejects_other_statuses():
    with pytest.raises(ValueError):
        PoliticaFinalizacao(status_pos_venda=StatusMesa.LIVRE)


@pytest.mark.parametrize(
    "forma,esperado",
    [(FormaPagamento.PIX, 0), (FormaPagamento.CARTAO_CREDITO, 0), (FormaPagamento.DINHEIRO, 1), (FormaPagamento.MISTO, 1)],
)
def test_cash_only_policy(stores, engine, forma, esperado):
    pdv = PontoDeVenda(modo=Modo.DEMO, stores=stores, politica=PoliticaFinalizacao(somente_dinheiro=True))
    sessao = _abrir_com_itens(pdv, ITEM_50)
    resultado = run(pdv.finalize_sale(sessao.venda.id, DadosFechamento(payment_type=forma)))
    assert len(rows(engine, LancamentoCaixa)) == esperado
    assert resultado.avisos == []


def test_cash_entry_failure_is_a_warning(stores, engine):
    async def broken(_lancamento):
        raise RuntimeError("connection reset")

    stores.caixa.insert_entry = broken
    pdv = PontoDeVenda(modo=Modo.DEMO, stores=stores, politica=PoliticaFinalizacao())
    sessao = _abrir_com_itens(pdv, ITEM_50)
    resultado = run(pdv.finalize_sale(sessao.venda.id, DadosFechamento(payment_type=FormaPagamento.DINHEIRO)))
    assert resultado.lancamento is None
    assert "connection reset" in resultado.avisos[0]
    assert _mesa(engine).status == StatusMesa.AGUARDANDO_CONTA


def test_register_lookup_failure_is_a_warning(stores, engine):
    async def broken(_loja):
        raise RuntimeError("timeout upstream")

    stores.caixa.find_open_register = broken
    pdv = PontoDeVenda(modo=Modo.DEMO, stores=stores, politica=PoliticaFinalizacao())
    sessao = _abrir_com_itens(pdv, ITEM_50)
    resultado = run(pdv.finalize_sale(sessao.venda.id, DadosFechamento(payment_type=FormaPagamento.DINHEIRO)))
    assert resultado.venda.status == StatusVenda.FECHADA
    assert len(resultado.avisos) == 1


def test_items_failure_is_partial_commit_and_resumable(stores, engine):
    real_insert = stores.itens.insert_batch
    vendas = Spy(stores.vendas)
    stores.vendas = vendas

    async def broken(_itens):
        raise RuntimeError("insert failed")

    stores.itens.insert_batch = broken
    pdv = PontoDeVenda(modo=Modo.DEMO, stores=stores, politica=PoliticaFinalizacao())
    sessao = _abrir_com_itens(pdv, ITEM_50)
    dados = DadosFechamento(payment_type=FormaPagamento.DINHEIRO)

    with pytest.raises(PartialCommitError) as exc:
        run(pdv.finalize_sale(sessao.venda.id, dados))
    assert exc.value.step == "gravar_itens"
    assert exc.value.entity_id == sessao.venda.id
    assert exc.value.completed == ("priced", "sale_persisted")
    assert _venda(engine, sessao.venda.id).status == StatusVenda.FECHADA
    assert _mesa(engine).status == StatusMesa.OCUPADA
    assert rows(engine, LancamentoCaixa) == []

    # carrinho não aceita mais edições
    with pytest.raises(PreconditionError):
        run(pdv.add_item(sessao.venda.id, **ITEM_50))

    stores.itens.insert_batch = real_insert
    vendas.calls.clear()
    resultado = run(pdv.finalize_sale(sessao.venda.id, dados))
    assert "update" not in vendas.calls
    assert len(resultado.itens) == 1
    assert len(rows(engine, ItemVenda)) == 1
    assert len(rows(engine, LancamentoCaixa)) == 1
    assert _mesa(engine).status == StatusMesa.AGUARDANDO_CONTA


def test_table_failure_is_partial_commit(stores, engine):
    real_update = stores.mesas.update

    async def broken(loja, mesa_id, patch, expected_status=None):
        if patch.get("status") == StatusMesa.AGUARDANDO_CONTA:
            raise RuntimeError("table update failed")
        return await real_update(loja, mesa_id, patch, expected_status)

    stores.mesas.update = broken
    pdv = PontoDeVenda(modo=Modo.DEMO, stores=stores, politica=PoliticaFinalizacao())
    sessao = _abrir_com_itens(pdv, ITEM_50)
    with pytest.raises(PartialCommitError) as exc:
        run(pdv.finalize_sale(sessao.venda.id, DadosFechamento(payment_type=FormaPagamento.DINHEIRO)))
    assert exc.value.step == "liberar_mesa"
    assert exc.value.completed == ("priced", "sale_persisted", "items_persisted", "cash_posted")
    assert len(rows(engine, LancamentoCaixa)) == 1


def test_sale_update_failure_leaves_everything_untouched(stores, engine):
    async def broken(_venda_id, _patch):
        raise RuntimeError("sale update failed")

    real_update = stores.vendas.update
    stores.vendas.update = broken
    pdv = PontoDeVenda(modo=Modo.DEMO, stores=stores, politica=PoliticaFinalizacao())
    sessao = _abrir_com_itens(pdv, ITEM_50)

    with pytest.raises(RemoteWriteError) as exc:
        run(pdv.finalize_sale(sessao.venda.id, DadosFechamento(payment_type=FormaPagamento.DINHEIRO)))
    assert not isinstance(exc.value, PartialCommitError)
    assert exc.value.step == "atualizar_venda"
    assert _venda(engine, sessao.venda.id).status == StatusVenda.ABERTA
    assert rows(engine, ItemVenda) == []

    # operador desiste: a finalização pendente é descartada
    assert pdv.cancel_finalization(sessao.venda.id) is True
    run(pdv.add_item(sessao.venda.id, **ITEM_50))
    stores.vendas.update = real_update
    resultado = run(pdv.finalize_sale(sessao.venda.id, DadosFechamento(payment_type=FormaPagamento.PIX)))
    assert resultado.venda.total_amount == Decimal("100.00")


def test_timeout_becomes_remote_error(stores, engine):
    async def slow(_venda_id, _patch):
        await asyncio.sleep(1)

    stores.vendas.update = slow
    pdv = PontoDeVenda(modo=Modo.DEMO, stores=stores, politica=PoliticaFinalizacao(), timeout=0.05)
    sessao = _abrir_com_itens(pdv, ITEM_50)
    with pytest.raises(RemoteWriteError) as exc:
        run(pdv.finalize_sale(sessao.venda.id, DadosFechamento(payment_type=FormaPagamento.DINHEIRO)))
    assert isinstance(exc.value.cause, asyncio.TimeoutError)


def test_second_finalize_is_rejected(pdv, engine):
    sessao = _abrir_com_itens(pdv, ITEM_50)
    dados = DadosFechamento(payment_type=FormaPagamento.DINHEIRO)
    run(pdv.finalize_sale(sessao.venda.id, dados))
    with pytest.raises(PreconditionError):
        run(pdv.finalize_sale(sessao.venda.id, dados))
    assert len(rows(engine, LancamentoCaixa)) == 1


def test_concurrent_double_submit(pdv, engine):
    sessao = _abrir_com_itens(pdv, ITEM_50)
    dados = DadosFechamento(payment_type=FormaPagamento.DINHEIRO)

    async def both():
        return await asyncio.gather(
            pdv.finalize_sale(sessao.venda.id, dados),
            pdv.finalize_sale(sessao.venda.id, dados),
            return_exceptions=True,
        )

    results = run(both())
    assert sum(isinstance(r, PreconditionError) for r in results) == 1
    assert len(rows(engine, LancamentoCaixa)) == 1
    assert len(rows(engine, ItemVenda)) == 1


def test_cancelled_saga_writes_nothing(stores, engine, pdv):
    sessao = _abrir_com_itens(pdv, ITEM_50)
    saga = FinalizacaoVenda(
        stores, sessao.mesa, sessao.venda, sessao.carrinho, DadosFechamento(payment_type=FormaPagamento.DINHEIRO)
    )
    saga.cancel()
    with pytest.raises(FinalizacaoCancelada):
        run(saga.run())
    assert saga.estado == Etapa.PRICED
    assert _venda(engine, sessao.venda.id).status == StatusVenda.ABERTA
    assert len(sessao.carrinho) == 1


def test_closed_sale_does_not_reopen_session(pdv):
    sessao = _abrir_com_itens(pdv, ITEM_50)
    run(pdv.finalize_sale(sessao.venda.id, DadosFechamento(payment_type=FormaPagamento.DINHEIRO)))
    with pytest.raises(PreconditionError):
        run(pdv.add_item(sessao.venda.id, **ITEM_50))


def test_retry_after_failed_sale_write_uses_new_checkout_data(stores, engine):
    real_update = stores.vendas.update
    falhas = []

    async def flaky(venda_id, patch):
        if not falhas:
            falhas.append(venda_id)
            raise RuntimeError("sale update failed")
        return await real_update(venda_id, patch)

    stores.vendas.update = flaky
    pdv = PontoDeVenda(modo=Modo.DEMO, stores=stores, politica=PoliticaFinalizacao())
    sessao = _abrir_com_itens(pdv, ITEM_50)

    with pytest.raises(RemoteWriteError):
        run(pdv.finalize_sale(sessao.venda.id, DadosFechamento(payment_type=FormaPagamento.DINHEIRO)))

    dados = DadosFechamento(payment_type=FormaPagamento.PIX, discount=Decimal("5"))
    resultado = run(pdv.finalize_sale(sessao.venda.id, dados))
    assert resultado.venda.payment_type == FormaPagamento.PIX
    assert resultado.venda.total_amount == Decimal("45.00")
    entries = rows(engine, LancamentoCaixa)
    assert len(entries) == 1
    assert entries[0].payment_method == FormaPagamento.PIX
    assert entries[0].amount == Decimal("45.00")


def test_resume_after_sale_write_requires_same_checkout_data(stores, engine):
    real_insert = stores.itens.insert_batch

    async def broken(_itens):
        raise RuntimeError("insert failed")

    stores.itens.insert_batch = broken
    pdv = PontoDeVenda(modo=Modo.DEMO, stores=stores, politica=PoliticaFinalizacao())
    sessao = _abrir_com_itens(pdv, ITEM_50)
    dados = DadosFechamento(payment_type=FormaPagamento.DINHEIRO)

    with pytest.raises(PartialCommitError):
        run(pdv.finalize_sale(sessao.venda.id, dados))
    stores.itens.insert_batch = real_insert

    with pytest.raises(PreconditionError):
        run(pdv.finalize_sale(sessao.venda.id, DadosFechamento(payment_type=FormaPagamento.PIX)))
    assert _venda(engine, sessao.venda.id).payment_type == FormaPagamento.DINHEIRO
    assert rows(engine, ItemVenda) == []

    resultado = run(pdv.finalize_sale(sessao.venda.id, DadosFechamento(payment_type=FormaPagamento.DINHEIRO)))
    assert resultado.venda.payment_type == FormaPagamento.DINHEIRO
    assert rows(engine, LancamentoCaixa)[0].payment_method == FormaPagamento.DINHEIRO


def test_items_committed_without_response_are_not_duplicated(stores, engine):
    real_insert = stores.itens.insert_batch
    lotes = []

    async def lost_response(itens):
        lotes.append([i.id for i in itens])
        await real_insert(itens)
        if len(lotes) == 1:
            raise RuntimeError("connection reset after commit")

    stores.itens.insert_batch = lost_response
    pdv = PontoDeVenda(modo=Modo.DEMO, stores=stores, politica=PoliticaFinalizacao())
    sessao = _abrir_com_itens(pdv, ITEM_50, {"product_code": "A", "product_name": "Água", "unit_price": "4"})
    dados = DadosFechamento(payment_type=FormaPagamento.DINHEIRO)

    with pytest.raises(PartialCommitError) as exc:
        run(pdv.finalize_sale(sessao.venda.id, dados))
    assert exc.value.step == "gravar_itens"
    assert len(rows(engine, ItemVenda)) == 2

    resultado = run(pdv.finalize_sale(sessao.venda.id, dados))
    assert len(lotes) == 1
    assert len(resultado.itens) == 2
    assert len(rows(engine, ItemVenda)) == 2
    assert _mesa(engine).status == StatusMesa.AGUARDANDO_CONTA


def test_failed_finalization_releases_its_lock(stores):
    async def broken(_itens):
        raise RuntimeError("insert failed")

    stores.itens.insert_batch = broken
    pdv = PontoDeVenda(modo=Modo.DEMO, stores=stores, politica=PoliticaFinalizacao())
    vazia = run(pdv.open_table(1, MESA_2))
    with pytest.raises(ValidationError):
        run(pdv.finalize_sale(vazia.venda.id, DadosFechamento(payment_type=FormaPagamento.DINHEIRO)))
    assert vazia.venda.id not in pdv._locks

    sessao = _abrir_com_itens(pdv, ITEM_50)
    with pytest.raises(PartialCommitError):
        run(pdv.finalize_sale(sessao.venda.id, DadosFechamento(payment_type=FormaPagamento.DINHEIRO)))
    assert sessao.venda.id not in pdv._locks
