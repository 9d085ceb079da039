# mesas/remote.py
"""
Colaboradores remotos no banco hospedado (Supabase / PostgREST) via httpx.

Esquema único; a loja é sempre um filtro `store_id=eq.<n>`, nunca um nome de
tabela escolhido em tempo de execução.

Dependências: httpx
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar

import httpx
from sqlmodel import SQLModel

from .config import REMOTE_TIMEOUT, SUPABASE_ANON_KEY, SUPABASE_URL
from .models import Caixa, ItemVenda, LancamentoCaixa, Mesa, StatusMesa, Venda, agora
from .stores import Stores

log = logging.getLogger(__name__)

M = TypeVar("M", bound=SQLModel)


def _payload(obj: SQLModel | Dict[str, Any]) -> Dict[str, Any]:
    if isinstance(obj, SQLModel):
        return obj.model_dump(mode="json")
    # patch: serializa Decimal/datetime/enum do mesmo jeito
    return {k: _jsonable(v) for k, v in obj.items()}


def _jsonable(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value"):  # Enum
        return value.value
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)  # Decimal


class PostgrestClient:
    """Chamadas cruas ao /rest/v1 do Supabase."""

    def __init__(
        self,
        base_url: str = SUPABASE_URL,
        api_key: str = SUPABASE_ANON_KEY,
        timeout: float = REMOTE_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        h = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            h["Prefer"] = prefer
        return h

    async def request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        url = f"{self.base_url}/rest/v1/{table}"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as cli:
            r = await cli.request(method, url, params=params, json=json, headers=self._headers(prefer))
            r.raise_for_status()
            if not r.content:
                return []
            data = r.json()
            return data if isinstance(data, list) else [data]


def _parse(model: Type[M], rows: List[Dict[str, Any]]) -> List[M]:
    fields = model.model_fields
    return [model.model_validate({k: v for k, v in row.items() if k in fields}) for row in rows]


def _first(model: Type[M], rows: List[Dict[str, Any]]) -> Optional[M]:
    parsed = _parse(model, rows[:1])
    return parsed[0] if parsed else None


class _RestBase:
    table: str = ""

    def __init__(self, client: PostgrestClient):
        self.client = client


class RestTableStore(_RestBase):
    table = Mesa.__tablename__

    async def list_active(self, loja: int) -> List[Mesa]:
        rows = await self.client.request(
            "GET",
            self.table,
            params={"select": "*", "store_id": f"eq.{int(loja)}", "is_active": "is.true", "order": "number.asc"},
        )
        return _parse(Mesa, rows)

    async def get(self, loja: int, mesa_id: str) -> Optional[Mesa]:
        rows = await self.client.request(
            "GET", self.table, params={"select": "*", "id": f"eq.{mesa_id}", "store_id": f"eq.{int(loja)}"}
        )
        return _first(Mesa, rows)

    async def update(
        self,
        loja: int,
        mesa_id: str,
        patch: Dict[str, Any],
        expected_status: Optional[StatusMesa] = None,
    ) -> Optional[Mesa]:
        params = {"id": f"eq.{mesa_id}", "store_id": f"eq.{int(loja)}"}
        if expected_status is not None:
            # compare-and-set: nenhuma linha afetada => status mudou
            params["status"] = f"eq.{expected_status.value}"
        body = _payload({**patch, "updated_at": agora()})
        rows = await self.client.request("PATCH", self.table, params=params, json=body, prefer="return=representation")
        mesa = _first(Mesa, rows)
        if mesa is None and expected_status is None:
            raise LookupError(f"Mesa {mesa_id} não encontrada na loja {int(loja)}")
        return mesa


class RestSaleStore(_RestBase):
    table = Venda.__tablename__

    async def insert(self, venda: Venda) -> Venda:
        # sale_number é atribuído pelo banco (sequência por loja)
        body = _payload(venda)
        body.pop("sale_number", None)
        rows = await self.client.request("POST", self.table, json=[body], prefer="return=representation")
        created = _first(Venda, rows)
        if created is None:
            raise LookupError("Inserção de venda não retornou registro")
        return created

    async def get(self, venda_id: str) -> Optional[Venda]:
        rows = await self.client.request("GET", self.table, params={"select": "*", "id": f"eq.{venda_id}"})
        return _first(Venda, rows)

    async def get_many(self, ids: Sequence[str]) -> List[Venda]:
        wanted = [i for i in ids if i]
        if not wanted:
            return []
        rows = await self.client.request(
            "GET", self.table, params={"select": "*", "id": f"in.({','.join(wanted)})"}
        )
        return _parse(Venda, rows)

    async def update(self, venda_id: str, patch: Dict[str, Any]) -> Venda:
        body = _payload({**patch, "updated_at": agora()})
        rows = await self.client.request(
            "PATCH", self.table, params={"id": f"eq.{venda_id}"}, json=body, prefer="return=representation"
        )
        venda = _first(Venda, rows)
        if venda is None:
            raise LookupError(f"Venda {venda_id} não encontrada")
        return venda


class RestSaleItemStore(_RestBase):
    table = ItemVenda.__tablename__

    async def insert_batch(self, itens: Sequence[ItemVenda]) -> None:
        if not itens:
            return
        await self.client.request("POST", self.table, json=[_payload(i) for i in itens], prefer="return=minimal")

    async def list_for_sale(self, venda_id: str) -> List[ItemVenda]:
        rows = await self.client.request(
            "GET", self.table, params={"select": "*", "sale_id": f"eq.{venda_id}", "order": "line_index.asc"}
        )
        return _parse(ItemVenda, rows)


class RestCashRegisterStore(_RestBase):
    table = Caixa.__tablename__
    entries_table = LancamentoCaixa.__tablename__

    async def find_open_register(self, loja: int) -> Optional[Caixa]:
        rows = await self.client.request(
            "GET",
            self.table,
            params={
                "select": "*",
                "store_id": f"eq.{int(loja)}",
                "closed_at": "is.null",
                "order": "opened_at.desc",
                "limit": "1",
            },
        )
        return _first(Caixa, rows)

    async def insert_entry(self, lancamento: LancamentoCaixa) -> None:
        await self.client.request(
            "POST", self.entries_table, json=[_payload(lancamento)], prefer="return=minimal"
        )


def rest_stores(client: Optional[PostgrestClient] = None) -> Stores:
    client = client or PostgrestClient()
    log.info("Usando banco hospedado em %s", client.base_url)
    return Stores(
        mesas=RestTableStore(client),
        vendas=RestSaleStore(client),
        itens=RestSaleItemStore(client),
        caixa=RestCashRegisterStore(client),
    )
