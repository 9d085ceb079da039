# mesas/stores.py
"""
Contratos dos colaboradores de persistência.

Duas implementações satisfazem estes contratos:
- `db.SqlStores`    (SQLModel; usado no modo demo e em bancos SQL locais)
- `remote.RestStores` (PostgREST/Supabase via httpx; modo live)

Todas as chamadas são assíncronas e recebem a loja explicitamente.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Optional, Protocol, Sequence, TypeVar

from .errors import RemoteWriteError, VendaMesaError
from .models import Caixa, ItemVenda, LancamentoCaixa, Mesa, StatusMesa, Venda

log = logging.getLogger(__name__)

T = TypeVar("T")


class TableStore(Protocol):
    async def list_active(self, loja: int) -> List[Mesa]: ...

    async def get(self, loja: int, mesa_id: str) -> Optional[Mesa]: ...

    async def update(
        self,
        loja: int,
        mesa_id: str,
        patch: Dict[str, Any],
        expected_status: Optional[StatusMesa] = None,
    ) -> Optional[Mesa]:
        """Retorna None quando `expected_status` não confere (nada é gravado)."""
        ...


class SaleStore(Protocol):
    async def insert(self, venda: Venda) -> Venda: ...

    async def get(self, venda_id: str) -> Optional[Venda]: ...

    async def get_many(self, ids: Sequence[str]) -> List[Venda]: ...

    async def update(self, venda_id: str, patch: Dict[str, Any]) -> Venda: ...


class SaleItemStore(Protocol):
    async def insert_batch(self, itens: Sequence[ItemVenda]) -> None: ...

    async def list_for_sale(self, venda_id: str) -> List[ItemVenda]: ...


class CashRegisterStore(Protocol):
    async def find_open_register(self, loja: int) -> Optional[Caixa]:
        """Caixa aberto mais recente (closed_at nulo), ou None."""
        ...

    async def insert_entry(self, lancamento: LancamentoCaixa) -> None: ...


@dataclass
class Stores:
    mesas: TableStore
    vendas: SaleStore
    itens: SaleItemStore
    caixa: CashRegisterStore


async def remote_call(
    step: str,
    awaitable: Awaitable[T],
    *,
    entity_id: object = None,
    timeout: Optional[float] = None,
) -> T:
    """
    Executa uma chamada ao colaborador com timeout explícito.
    Qualquer falha de transporte vira RemoteWriteError(step, entity_id).
    """
    try:
        if timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout)
    except VendaMesaError:
        raise
    except asyncio.TimeoutError as e:
        log.error("Timeout na etapa %s (id=%s) após %ss", step, entity_id, timeout)
        raise RemoteWriteError(step, entity_id, e) from e
    except Exception as e:
        log.error("Erro na etapa %s (id=%s): %s", step, entity_id, e)
        raise RemoteWriteError(step, entity_id, e) from e
