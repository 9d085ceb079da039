# mesas/finalization.py
"""
Fechamento de uma venda de mesa como uma sequência explícita de etapas:

    PENDENTE -> PRICED -> SALE_PERSISTED -> ITEMS_PERSISTED -> CASH_POSTED -> TABLE_RELEASED

Cada etapa é uma chamada ao colaborador, executada em ordem estrita; a etapa N+1
só começa depois que a N terminou com sucesso. Não há retry automático nem
rollback compensatório: se uma etapa falha, `estado` fica na última etapa
concluída e um novo `run()` retoma a partir da seguinte.

Falhas no lançamento de caixa (busca do caixa aberto ou inserção) viram avisos
no resultado e não interrompem o fechamento.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from . import config
from .cart import Carrinho, money, to_decimal
from .errors import (
    ConflictError,
    FinalizacaoCancelada,
    PartialCommitError,
    PreconditionError,
    RemoteWriteError,
    ValidationError,
)
from .models import (
    ZERO,
    Caixa,
    FormaPagamento,
    ItemVenda,
    LancamentoCaixa,
    Mesa,
    StatusMesa,
    StatusVenda,
    TipoLancamento,
    Venda,
    agora,
)
from .stores import Stores, remote_call

log = logging.getLogger(__name__)


class Etapa(str, Enum):
    PENDENTE = "pendente"
    PRICED = "priced"
    SALE_PERSISTED = "sale_persisted"
    ITEMS_PERSISTED = "items_persisted"
    CASH_POSTED = "cash_posted"
    TABLE_RELEASED = "table_released"


ORDEM = list(Etapa)

PAGAMENTOS_EM_DINHEIRO = (FormaPagamento.DINHEIRO, FormaPagamento.MISTO)


@dataclass(frozen=True)
class PoliticaFinalizacao:
    """
    Política explícita de pós-venda.
    - status_pos_venda: aguardando_conta (padrão) ou limpeza
    - somente_dinheiro: lança no caixa apenas pagamentos dinheiro/misto
    """
    status_pos_venda: StatusMesa = StatusMesa.AGUARDANDO_CONTA
    somente_dinheiro: bool = False

    def __post_init__(self) -> None:
        if self.status_pos_venda not in (StatusMesa.AGUARDANDO_CONTA, StatusMesa.LIMPEZA):
            raise ValueError(f"status pós-venda inválido: {self.status_pos_venda}")

    @classmethod
    def from_config(cls) -> "PoliticaFinalizacao":
        return cls(
            status_pos_venda=StatusMesa(config.STATUS_POS_VENDA),
            somente_dinheiro=config.CAIXA_SOMENTE_DINHEIRO,
        )

    def lanca_no_caixa(self, forma: FormaPagamento) -> bool:
        return not self.somente_dinheiro or forma in PAGAMENTOS_EM_DINHEIRO


@dataclass
class DadosFechamento:
    payment_type: FormaPagamento
    discount: Decimal = ZERO
    customer_name: Optional[str] = None
    customer_count: int = 1
    notes: Optional[str] = None
    change_amount: Optional[Decimal] = None
    # quando informado, o troco é calculado: recebido - total
    amount_received: Optional[Decimal] = None


@dataclass
class ResultadoFinalizacao:
    venda: Venda
    mesa: Mesa
    itens: List[ItemVenda]
    lancamento: Optional[LancamentoCaixa] = None
    avisos: List[str] = field(default_factory=list)


class FinalizacaoVenda:
    def __init__(
        self,
        stores: Stores,
        mesa: Mesa,
        venda: Venda,
        carrinho: Carrinho,
        dados: DadosFechamento,
        politica: Optional[PoliticaFinalizacao] = None,
        timeout: float = config.REMOTE_TIMEOUT,
    ):
        self.stores = stores
        self.mesa = mesa
        self.venda = venda
        self.carrinho = carrinho
        self.dados = dados
        self.politica = politica or PoliticaFinalizacao()
        self.timeout = timeout

        self.estado = Etapa.PENDENTE
        self.subtotal = ZERO
        self.discount = ZERO
        self.total = ZERO
        self.change = ZERO
        self.itens: List[ItemVenda] = []
        self.lancamento: Optional[LancamentoCaixa] = None
        self.avisos: List[str] = []
        self._cancelado = False
        self._itens_tentados = False

    @property
    def concluida(self) -> bool:
        return self.estado == Etapa.TABLE_RELEASED

    def completed(self) -> List[str]:
        return [e.value for e in ORDEM[1 : ORDEM.index(self.estado) + 1]]

    def cancel(self) -> None:
        """Só tem efeito antes da venda ser gravada."""
        if ORDEM.index(self.estado) >= ORDEM.index(Etapa.SALE_PERSISTED):
            log.warning("Cancelamento ignorado: venda %s já gravada", self.venda.id)
            return
        self._cancelado = True

    async def run(self) -> ResultadoFinalizacao:
        if self.estado == Etapa.PENDENTE:
            self._price()
        if self.estado == Etapa.PRICED:
            await self._persist_sale()
        if self.estado == Etapa.SALE_PERSISTED:
            await self._persist_items()
        if self.estado == Etapa.ITEMS_PERSISTED:
            await self._post_cash()
        if self.estado == Etapa.CASH_POSTED:
            await self._transition_table()

        self.carrinho.clear()
        log.info("Venda #%s da mesa %s finalizada", self.venda.sale_number, self.mesa.number)
        return ResultadoFinalizacao(
            venda=self.venda,
            mesa=self.mesa,
            itens=list(self.itens),
            lancamento=self.lancamento,
            avisos=list(self.avisos),
        )

    # ---------- 1) preço ----------

    def _price(self) -> None:
        if self.venda.status != StatusVenda.ABERTA:
            raise PreconditionError(f"Venda #{self.venda.sale_number} não está aberta.")
        if len(self.carrinho) == 0:
            raise ValidationError("Carrinho vazio: adicione itens antes de finalizar.")
        d = self.dados
        if not isinstance(d.payment_type, FormaPagamento):
            raise ValidationError(f"Forma de pagamento inválida: {d.payment_type!r}")
        if isinstance(d.customer_count, bool) or not isinstance(d.customer_count, int) or d.customer_count < 1:
            raise ValidationError("Quantidade de clientes deve ser >= 1.")

        subtotal = self.carrinho.total()
        discount = money(to_decimal(d.discount, "discount"))
        if discount < 0 or discount > subtotal:
            raise ValidationError("Desconto deve estar entre zero e o subtotal.")
        total = subtotal - discount

        if d.amount_received is not None:
            recebido = money(to_decimal(d.amount_received, "amount_received"))
            if recebido < total:
                raise ValidationError("Valor recebido menor que o total.")
            change = recebido - total
        elif d.change_amount is not None:
            change = money(to_decimal(d.change_amount, "change_amount"))
            if change < 0:
                raise ValidationError("Troco não pode ser negativo.")
        else:
            change = ZERO

        self.subtotal, self.discount, self.total, self.change = subtotal, discount, total, change
        # snapshot na ordem do carrinho
        self.itens = [item.to_item_venda(self.venda.id, idx) for idx, item in enumerate(self.carrinho)]
        self.estado = Etapa.PRICED

    # ---------- 2) venda ----------

    async def _persist_sale(self) -> None:
        if self._cancelado:
            raise FinalizacaoCancelada(f"Finalização da venda #{self.venda.sale_number} cancelada.")
        d = self.dados
        patch = {
            "customer_name": d.customer_name,
            "customer_count": d.customer_count,
            "subtotal": self.subtotal,
            "discount_amount": self.discount,
            "total_amount": self.total,
            "payment_type": d.payment_type,
            "change_amount": self.change,
            "notes": d.notes,
            "status": StatusVenda.FECHADA,
            "closed_at": agora(),
        }
        self.venda = await remote_call(
            "atualizar_venda", self.stores.vendas.update(self.venda.id, patch), entity_id=self.venda.id, timeout=self.timeout
        )
        self.estado = Etapa.SALE_PERSISTED

    # ---------- 3) itens ----------

    async def _persist_items(self) -> None:
        pendentes = self.itens
        try:
            if self._itens_tentados:
                # a tentativa anterior pode ter gravado o lote sem devolver resposta
                gravados = await remote_call(
                    "conferir_itens",
                    self.stores.itens.list_for_sale(self.venda.id),
                    entity_id=self.venda.id,
                    timeout=self.timeout,
                )
                ids = {i.id for i in gravados}
                pendentes = [i for i in self.itens if i.id not in ids]
            self._itens_tentados = True
            if pendentes:
                await remote_call(
                    "gravar_itens", self.stores.itens.insert_batch(pendentes), entity_id=self.venda.id, timeout=self.timeout
                )
        except RemoteWriteError as e:
            raise self._partial(e) from e
        self.estado = Etapa.ITEMS_PERSISTED

    # ---------- 4) caixa (não fatal) ----------

    async def _post_cash(self) -> None:
        forma = self.dados.payment_type
        if not self.politica.lanca_no_caixa(forma):
            log.info("Pagamento %s não gera lançamento no caixa", forma.value)
            self.estado = Etapa.CASH_POSTED
            return

        try:
            caixa: Optional[Caixa] = await remote_call(
                "buscar_caixa", self.stores.caixa.find_open_register(self.venda.store_id), timeout=self.timeout
            )
        except RemoteWriteError as e:
            self._aviso(f"Erro ao buscar caixa aberto: {e}")
            self.estado = Etapa.CASH_POSTED
            return

        if caixa is None:
            self._aviso("Nenhum caixa aberto encontrado - venda finalizada sem registro no caixa")
            self.estado = Etapa.CASH_POSTED
            return

        lancamento = LancamentoCaixa(
            register_id=caixa.id,
            type=TipoLancamento.INCOME,
            amount=self.total,
            description=f"Venda Mesa #{self.mesa.number} - Venda #{self.venda.sale_number}",
            payment_method=forma,
        )
        try:
            await remote_call(
                "lancar_caixa", self.stores.caixa.insert_entry(lancamento), entity_id=caixa.id, timeout=self.timeout
            )
            self.lancamento = lancamento
            log.info("Entrada de %s registrada no caixa %s", self.total, caixa.id)
        except RemoteWriteError as e:
            self._aviso(f"Erro ao registrar entrada no caixa: {e}")
        self.estado = Etapa.CASH_POSTED

    # ---------- 5) mesa ----------

    async def _transition_table(self) -> None:
        patch = {"status": self.politica.status_pos_venda, "current_sale_id": None}
        try:
            mesa = await remote_call(
                "liberar_mesa",
                self.stores.mesas.update(self.venda.store_id, self.mesa.id, patch, expected_status=StatusMesa.OCUPADA),
                entity_id=self.mesa.id,
                timeout=self.timeout,
            )
        except RemoteWriteError as e:
            raise self._partial(e) from e
        if mesa is None:
            conflito = ConflictError(f"Mesa {self.mesa.number} não está mais ocupada.")
            raise self._partial(RemoteWriteError("liberar_mesa", self.mesa.id, conflito)) from conflito
        self.mesa = mesa
        self.estado = Etapa.TABLE_RELEASED

    # ---------- helpers ----------

    def _partial(self, e: RemoteWriteError) -> PartialCommitError:
        log.error("Fechamento parcial da venda %s: etapa %s falhou após %s", self.venda.id, e.step, self.completed())
        return PartialCommitError(e.step, e.entity_id, e.cause, completed=self.completed())

    def _aviso(self, msg: str) -> None:
        log.warning(msg)
        self.avisos.append(msg)
