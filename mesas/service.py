# mesas/service.py
"""
Ponto de venda por mesa: junta registro de mesas, carrinhos em memória e
fechamento, com o modo (LIVE/DEMO) escolhido uma única vez na construção.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from . import config
from .cart import Carrinho, ItemCarrinho
from .config import Modo
from .db import init_db, make_engine, sql_stores
from .errors import PreconditionError
from .finalization import DadosFechamento, Etapa, FinalizacaoVenda, PoliticaFinalizacao, ResultadoFinalizacao
from .models import Mesa, StatusVenda, Venda
from .registry import MesaAtiva, RegistroMesas
from .remote import rest_stores
from .seed import seed_demo
from .stores import Stores, remote_call

log = logging.getLogger(__name__)


@dataclass
class SessaoVenda:
    loja: int
    mesa: Mesa
    venda: Venda
    carrinho: Carrinho
    saga: Optional[FinalizacaoVenda] = None


def build_stores(modo: Modo) -> Stores:
    if modo == Modo.LIVE:
        return rest_stores()
    log.warning("Supabase não configurado - usando dados de demonstração")
    engine = make_engine(config.DB_URL)
    if config.DB_URL:
        # banco local persistente: popular com `python -m mesas.seed`
        init_db(engine)
    else:
        seed_demo(engine)
    return sql_stores(engine)


class PontoDeVenda:
    def __init__(
        self,
        modo: Optional[Modo] = None,
        stores: Optional[Stores] = None,
        politica: Optional[PoliticaFinalizacao] = None,
        timeout: float = config.REMOTE_TIMEOUT,
    ):
        self.modo = modo or config.resolve_modo()
        self.stores = stores or build_stores(self.modo)
        self.politica = politica or PoliticaFinalizacao.from_config()
        self.timeout = timeout
        self._sessoes: Dict[str, SessaoVenda] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def registro(self, loja: int) -> RegistroMesas:
        return RegistroMesas(self.stores, loja, timeout=self.timeout)

    # ---------- mesas ----------

    async def list_tables(self, loja: int) -> List[MesaAtiva]:
        return await self.registro(loja).list_active()

    async def open_table(self, loja: int, mesa_id: str, operator_name: Optional[str] = None) -> SessaoVenda:
        aberta = await self.registro(loja).open_table(mesa_id, operator_name=operator_name)
        sessao = SessaoVenda(int(loja), aberta.mesa, aberta.current_sale, Carrinho())
        self._sessoes[sessao.venda.id] = sessao
        return sessao

    async def release_table(self, loja: int, mesa_id: str) -> Mesa:
        return await self.registro(loja).release_table(mesa_id)

    # ---------- sessão / carrinho ----------

    async def session(self, venda_id: str) -> SessaoVenda:
        """Sessão em memória; recria (carrinho vazio) a partir do banco se necessário."""
        sessao = self._sessoes.get(venda_id)
        if sessao is not None:
            return sessao
        venda = await remote_call("buscar_venda", self.stores.vendas.get(venda_id), entity_id=venda_id, timeout=self.timeout)
        if venda is None or venda.status != StatusVenda.ABERTA:
            raise PreconditionError(f"Venda {venda_id} não está aberta.")
        mesa = await self.registro(venda.store_id).get(venda.table_id)
        sessao = SessaoVenda(venda.store_id, mesa, venda, Carrinho())
        self._sessoes[venda_id] = sessao
        return sessao

    async def _editable(self, venda_id: str) -> SessaoVenda:
        sessao = await self.session(venda_id)
        if sessao.venda.status != StatusVenda.ABERTA or sessao.saga is not None:
            raise PreconditionError(f"Venda #{sessao.venda.sale_number} não aceita mais itens.")
        return sessao

    async def add_item(self, venda_id: str, **item) -> ItemCarrinho:
        sessao = await self._editable(venda_id)
        return sessao.carrinho.add_item(**item)

    async def update_quantity(self, venda_id: str, index: int, quantity: int) -> Optional[ItemCarrinho]:
        sessao = await self._editable(venda_id)
        return sessao.carrinho.update_quantity(index, quantity)

    async def remove_item(self, venda_id: str, index: int) -> ItemCarrinho:
        sessao = await self._editable(venda_id)
        return sessao.carrinho.remove_item(index)

    # ---------- fechamento ----------

    async def finalize_sale(self, venda_id: str, dados: DadosFechamento) -> ResultadoFinalizacao:
        """
        Fecha a venda. Um segundo pedido enquanto o primeiro está em andamento é
        recusado; uma finalização que falhou no meio é retomada da etapa seguinte.
        """
        lock = self._locks.setdefault(venda_id, asyncio.Lock())
        if lock.locked():
            raise PreconditionError(f"Finalização da venda {venda_id} já está em andamento.")
        try:
            async with lock:
                return await self._finalize_locked(venda_id, dados)
        finally:
            # o lock só protege a chamada em andamento
            self._locks.pop(venda_id, None)

    async def _finalize_locked(self, venda_id: str, dados: DadosFechamento) -> ResultadoFinalizacao:
        sessao = self._sessoes.get(venda_id)
        if sessao is None:
            sessao = await self.session(venda_id)
        saga = sessao.saga
        if saga is not None and saga.estado in (Etapa.PENDENTE, Etapa.PRICED):
            # nada gravado ainda: vale o pedido mais recente
            saga = None
        elif saga is not None and saga.dados != dados:
            raise PreconditionError(
                f"Venda #{sessao.venda.sale_number} já foi gravada com outros dados de fechamento; "
                "repita a finalização com os mesmos dados."
            )
        if saga is None:
            saga = FinalizacaoVenda(
                self.stores,
                sessao.mesa,
                sessao.venda,
                sessao.carrinho,
                dados,
                politica=self.politica,
                timeout=self.timeout,
            )
        else:
            log.info("Retomando finalização da venda %s em %s", venda_id, saga.estado.value)
        sessao.saga = saga
        try:
            resultado = await saga.run()
        except BaseException:
            if saga.estado == Etapa.PENDENTE:
                # entrada inválida: a sessão volta a ser editável
                sessao.saga = None
            raise
        self._sessoes.pop(venda_id, None)
        return resultado

    def cancel_finalization(self, venda_id: str) -> bool:
        """
        Descarta uma finalização que ainda não gravou a venda (ex.: falha na
        etapa 2). A venda fica como estava e o carrinho volta a ser editável.
        """
        sessao = self._sessoes.get(venda_id)
        if sessao is None or sessao.saga is None:
            return False
        lock = self._locks.get(venda_id)
        if lock is not None and lock.locked():
            raise PreconditionError(f"Finalização da venda {venda_id} está em andamento.")
        if sessao.saga.estado not in (Etapa.PENDENTE, Etapa.PRICED):
            return False
        sessao.saga.cancel()
        sessao.saga = None
        return True
