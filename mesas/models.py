# mesas/models.py
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import Column
from sqlalchemy import Enum as SAEnum
from sqlmodel import Field, SQLModel

CENTAVOS = Decimal("0.01")
ZERO = Decimal("0.00")


def agora() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return uuid4().hex


class Loja(int, Enum):
    """Escopo físico (loja) de todas as operações."""
    LOJA1 = 1
    LOJA2 = 2


class StatusMesa(str, Enum):
    LIVRE = "livre"
    OCUPADA = "ocupada"
    AGUARDANDO_CONTA = "aguardando_conta"
    LIMPEZA = "limpeza"


class StatusVenda(str, Enum):
    ABERTA = "aberta"
    FECHADA = "fechada"
    CANCELADA = "cancelada"


class FormaPagamento(str, Enum):
    DINHEIRO = "dinheiro"
    PIX = "pix"
    CARTAO_CREDITO = "cartao_credito"
    CARTAO_DEBITO = "cartao_debito"
    VOUCHER = "voucher"
    MISTO = "misto"


class TipoLancamento(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


def _enum_column(enum_cls: type[Enum], nullable: bool = False) -> Column:
    # grava o .value ("livre"), não o nome do membro
    return Column(
        SAEnum(enum_cls, values_callable=lambda e: [m.value for m in e], native_enum=False),
        nullable=nullable,
    )


class Mesa(SQLModel, table=True):
    __tablename__ = "restaurant_tables"

    id: str = Field(default_factory=_uuid, primary_key=True)
    store_id: int = Field(index=True)
    number: int
    name: str
    capacity: int = 4
    status: StatusMesa = Field(default=StatusMesa.LIVRE, sa_column=_enum_column(StatusMesa))
    location: Optional[str] = None
    is_active: bool = True
    # não-nulo somente quando status == ocupada
    current_sale_id: Optional[str] = None
    created_at: datetime = Field(default_factory=agora)
    updated_at: datetime = Field(default_factory=agora)


class Venda(SQLModel, table=True):
    __tablename__ = "table_sales"

    id: str = Field(default_factory=_uuid, primary_key=True)
    store_id: int = Field(index=True)
    table_id: str = Field(foreign_key="restaurant_tables.id")
    sale_number: int = 0
    operator_name: Optional[str] = None
    customer_name: Optional[str] = None
    customer_count: int = 1
    subtotal: Decimal = Field(default=ZERO, max_digits=12, decimal_places=2)
    discount_amount: Decimal = Field(default=ZERO, max_digits=12, decimal_places=2)
    total_amount: Decimal = Field(default=ZERO, max_digits=12, decimal_places=2)
    payment_type: Optional[FormaPagamento] = Field(
        default=None, sa_column=_enum_column(FormaPagamento, nullable=True)
    )
    change_amount: Decimal = Field(default=ZERO, max_digits=12, decimal_places=2)
    status: StatusVenda = Field(default=StatusVenda.ABERTA, sa_column=_enum_column(StatusVenda))
    notes: Optional[str] = None
    opened_at: datetime = Field(default_factory=agora)
    closed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=agora)
    updated_at: datetime = Field(default_factory=agora)


class ItemVenda(SQLModel, table=True):
    __tablename__ = "table_sale_items"

    id: str = Field(default_factory=_uuid, primary_key=True)
    sale_id: str = Field(foreign_key="table_sales.id", index=True)
    # posição no carrinho; preserva a ordem de inserção
    line_index: int = 0
    product_code: str
    product_name: str
    quantity: int = 1
    weight_kg: Optional[Decimal] = Field(default=None, max_digits=10, decimal_places=3)
    unit_price: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    price_per_gram: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=4)
    discount_amount: Decimal = Field(default=ZERO, max_digits=12, decimal_places=2)
    subtotal: Decimal = Field(default=ZERO, max_digits=12, decimal_places=2)
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=agora)


class Caixa(SQLModel, table=True):
    __tablename__ = "cash_registers"

    id: str = Field(default_factory=_uuid, primary_key=True)
    store_id: int = Field(index=True)
    operator_name: Optional[str] = None
    opening_amount: Decimal = Field(default=ZERO, max_digits=12, decimal_places=2)
    opened_at: datetime = Field(default_factory=agora)
    closed_at: Optional[datetime] = None


class LancamentoCaixa(SQLModel, table=True):
    __tablename__ = "cash_entries"

    id: str = Field(default_factory=_uuid, primary_key=True)
    register_id: str = Field(foreign_key="cash_registers.id", index=True)
    type: TipoLancamento = Field(default=TipoLancamento.INCOME, sa_column=_enum_column(TipoLancamento))
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    description: str
    payment_method: Optional[FormaPagamento] = Field(
        default=None, sa_column=_enum_column(FormaPagamento, nullable=True)
    )
    created_at: datetime = Field(default_factory=agora)
