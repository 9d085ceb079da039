# mesas/db.py
from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from sqlalchemy import event, func, update
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, col, create_engine, select

from .models import Caixa, ItemVenda, LancamentoCaixa, Mesa, StatusMesa, Venda, agora
from .stores import Stores

T = TypeVar("T")

PRIMEIRO_NUMERO_VENDA = 1001


def _on_sqlite_connect(dbapi_conn, _conn_record):
    cur = dbapi_conn.cursor()
    cur.execute("PRAGMA foreign_keys = ON;")
    cur.close()


def make_engine(url: str = ""):
    """
    Cria o engine SQL.
    - url vazia: SQLite em memória compartilhado (modo demo)
    - sqlite:///arquivo.db ou qualquer URL SQLAlchemy
    """
    if not url:
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    elif url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False}, pool_pre_ping=True)
    else:
        engine = create_engine(url, pool_pre_ping=True)
    if engine.dialect.name == "sqlite":
        # registra o hook no Engine síncrono
        event.listen(engine, "connect", _on_sqlite_connect)
    return engine


def init_db(engine) -> None:
    from . import models  # noqa: F401  registra tabelas
    SQLModel.metadata.create_all(engine)


def _apply(obj: SQLModel, patch: Dict[str, Any]) -> None:
    for key, value in patch.items():
        if not hasattr(obj, key):
            raise KeyError(f"Campo desconhecido: {key}")
        setattr(obj, key, value)
    if hasattr(obj, "updated_at"):
        obj.updated_at = agora()


class _SqlBase:
    def __init__(self, engine):
        self.engine = engine

    def session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    async def _run(self, fn: Callable[[], T]) -> T:
        return await asyncio.to_thread(fn)


class SqlTableStore(_SqlBase):
    async def list_active(self, loja: int) -> List[Mesa]:
        def _q() -> List[Mesa]:
            with self.session() as s:
                stmt = (
                    select(Mesa)
                    .where(Mesa.store_id == int(loja), Mesa.is_active == True)  # noqa: E712
                    .order_by(Mesa.number)
                )
                return list(s.exec(stmt).all())
        return await self._run(_q)

    async def get(self, loja: int, mesa_id: str) -> Optional[Mesa]:
        def _q() -> Optional[Mesa]:
            with self.session() as s:
                mesa = s.get(Mesa, mesa_id)
                if mesa is None or mesa.store_id != int(loja):
                    return None
                return mesa
        return await self._run(_q)

    async def update(
        self,
        loja: int,
        mesa_id: str,
        patch: Dict[str, Any],
        expected_status: Optional[StatusMesa] = None,
    ) -> Optional[Mesa]:
        for key in patch:
            if key not in Mesa.model_fields:
                raise KeyError(f"Campo desconhecido: {key}")
        values = {**patch, "updated_at": agora()}

        def _q() -> Optional[Mesa]:
            with self.session() as s:
                # compare-and-set num único UPDATE condicional
                stmt = update(Mesa).where(col(Mesa.id) == mesa_id, col(Mesa.store_id) == int(loja))
                if expected_status is not None:
                    stmt = stmt.where(col(Mesa.status) == expected_status)
                result = s.exec(stmt.values(**values))
                s.commit()
                mesa = s.get(Mesa, mesa_id)
                if mesa is None or mesa.store_id != int(loja):
                    raise LookupError(f"Mesa {mesa_id} não encontrada na loja {int(loja)}")
                if result.rowcount == 0:
                    return None
                return mesa
        return await self._run(_q)


class SqlSaleStore(_SqlBase):
    async def insert(self, venda: Venda) -> Venda:
        def _q() -> Venda:
            with self.session() as s:
                ultimo = s.exec(
                    select(func.max(Venda.sale_number)).where(Venda.store_id == venda.store_id)
                ).one()
                venda.sale_number = max(int(ultimo or 0) + 1, PRIMEIRO_NUMERO_VENDA)
                s.add(venda)
                s.commit()
                s.refresh(venda)
                return venda
        return await self._run(_q)

    async def get(self, venda_id: str) -> Optional[Venda]:
        def _q() -> Optional[Venda]:
            with self.session() as s:
                return s.get(Venda, venda_id)
        return await self._run(_q)

    async def get_many(self, ids: Sequence[str]) -> List[Venda]:
        wanted = [i for i in ids if i]
        if not wanted:
            return []

        def _q() -> List[Venda]:
            with self.session() as s:
                return list(s.exec(select(Venda).where(col(Venda.id).in_(wanted))).all())
        return await self._run(_q)

    async def update(self, venda_id: str, patch: Dict[str, Any]) -> Venda:
        def _q() -> Venda:
            with self.session() as s:
                venda = s.get(Venda, venda_id)
                if venda is None:
                    raise LookupError(f"Venda {venda_id} não encontrada")
                _apply(venda, patch)
                s.add(venda)
                s.commit()
                s.refresh(venda)
                return venda
        return await self._run(_q)


class SqlSaleItemStore(_SqlBase):
    async def insert_batch(self, itens: Sequence[ItemVenda]) -> None:
        def _q() -> None:
            with self.session() as s:
                s.add_all(list(itens))
                s.commit()
        await self._run(_q)

    async def list_for_sale(self, venda_id: str) -> List[ItemVenda]:
        def _q() -> List[ItemVenda]:
            with self.session() as s:
                stmt = select(ItemVenda).where(ItemVenda.sale_id == venda_id).order_by(ItemVenda.line_index)
                return list(s.exec(stmt).all())
        return await self._run(_q)


class SqlCashRegisterStore(_SqlBase):
    async def find_open_register(self, loja: int) -> Optional[Caixa]:
        def _q() -> Optional[Caixa]:
            with self.session() as s:
                stmt = (
                    select(Caixa)
                    .where(Caixa.store_id == int(loja), col(Caixa.closed_at).is_(None))
                    .order_by(col(Caixa.opened_at).desc())
                    .limit(1)
                )
                return s.exec(stmt).first()
        return await self._run(_q)

    async def insert_entry(self, lancamento: LancamentoCaixa) -> None:
        def _q() -> None:
            with self.session() as s:
                s.add(lancamento)
                s.commit()
        await self._run(_q)


def sql_stores(engine) -> Stores:
    return Stores(
        mesas=SqlTableStore(engine),
        vendas=SqlSaleStore(engine),
        itens=SqlSaleItemStore(engine),
        caixa=SqlCashRegisterStore(engine),
    )
