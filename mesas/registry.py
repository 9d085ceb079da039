# mesas/registry.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from .config import REMOTE_TIMEOUT
from .errors import ConflictError, PreconditionError
from .models import Mesa, StatusMesa, StatusVenda, Venda, agora
from .stores import Stores, remote_call

log = logging.getLogger(__name__)

LIBERAVEIS = (StatusMesa.AGUARDANDO_CONTA, StatusMesa.LIMPEZA)


@dataclass
class MesaAtiva:
    mesa: Mesa
    current_sale: Optional[Venda] = None


class RegistroMesas:
    """Mesas de uma loja e suas transições de status (abrir / liberar)."""

    def __init__(self, stores: Stores, loja: int, timeout: float = REMOTE_TIMEOUT):
        self.stores = stores
        self.loja = int(loja)
        self.timeout = timeout

    async def list_active(self) -> List[MesaAtiva]:
        mesas = await remote_call("listar_mesas", self.stores.mesas.list_active(self.loja), timeout=self.timeout)
        ids = [m.current_sale_id for m in mesas if m.current_sale_id]
        vendas = {}
        if ids:
            found = await remote_call("listar_vendas_abertas", self.stores.vendas.get_many(ids), timeout=self.timeout)
            vendas = {v.id: v for v in found}
        log.info("%d mesas carregadas da Loja %d", len(mesas), self.loja)
        return [MesaAtiva(m, vendas.get(m.current_sale_id)) for m in mesas]

    async def get(self, mesa_id: str) -> Mesa:
        mesa = await remote_call(
            "buscar_mesa", self.stores.mesas.get(self.loja, mesa_id), entity_id=mesa_id, timeout=self.timeout
        )
        if mesa is None:
            raise PreconditionError(f"Mesa {mesa_id} não existe na Loja {self.loja}.")
        return mesa

    async def open_table(self, mesa: Mesa | str, operator_name: Optional[str] = None) -> MesaAtiva:
        """
        Cria uma venda aberta e ocupa a mesa.
        - status relido do banco antes de gravar
        - ocupação via compare-and-set em status=livre; se perder a corrida,
          a venda recém criada é cancelada e ConflictError é levantado
        """
        mesa_id = mesa if isinstance(mesa, str) else mesa.id
        atual = await self.get(mesa_id)
        if atual.status != StatusMesa.LIVRE:
            raise ConflictError(f"Mesa {atual.number} não está livre (status={atual.status.value}).")

        log.info("Abrindo mesa %s (Loja %d)", atual.number, self.loja)
        venda = Venda(
            store_id=self.loja,
            table_id=atual.id,
            operator_name=operator_name,
            status=StatusVenda.ABERTA,
            opened_at=agora(),
        )
        venda = await remote_call("criar_venda", self.stores.vendas.insert(venda), entity_id=atual.id, timeout=self.timeout)

        ocupada = await remote_call(
            "ocupar_mesa",
            self.stores.mesas.update(
                self.loja,
                atual.id,
                {"status": StatusMesa.OCUPADA, "current_sale_id": venda.id},
                expected_status=StatusMesa.LIVRE,
            ),
            entity_id=atual.id,
            timeout=self.timeout,
        )
        if ocupada is None:
            await remote_call(
                "cancelar_venda",
                self.stores.vendas.update(venda.id, {"status": StatusVenda.CANCELADA, "closed_at": agora()}),
                entity_id=venda.id,
                timeout=self.timeout,
            )
            raise ConflictError(f"Mesa {atual.number} foi ocupada por outro operador.")

        log.info("Mesa %s aberta com venda #%s", ocupada.number, venda.sale_number)
        return MesaAtiva(ocupada, venda)

    async def release_table(self, mesa: Mesa | str) -> Mesa:
        mesa_id = mesa if isinstance(mesa, str) else mesa.id
        atual = await self.get(mesa_id)
        if atual.status not in LIBERAVEIS:
            raise PreconditionError(
                f"Mesa {atual.number} só pode ser liberada em aguardando_conta ou limpeza (status={atual.status.value})."
            )
        liberada = await remote_call(
            "liberar_mesa",
            self.stores.mesas.update(
                self.loja,
                atual.id,
                {"status": StatusMesa.LIVRE, "current_sale_id": None},
                expected_status=atual.status,
            ),
            entity_id=atual.id,
            timeout=self.timeout,
        )
        if liberada is None:
            raise ConflictError(f"Mesa {atual.number} mudou de status durante a liberação.")
        log.info("Mesa %s liberada", liberada.number)
        return liberada
