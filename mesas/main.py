# mesas/main.py
from __future__ import annotations

import logging
import os
from decimal import Decimal
from functools import lru_cache
from typing import Any, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .cart import ItemCarrinho
from .errors import PartialCommitError, PreconditionError, RemoteWriteError, ValidationError, VendaMesaError
from .finalization import DadosFechamento, ResultadoFinalizacao
from .models import FormaPagamento, Loja
from .registry import MesaAtiva
from .service import PontoDeVenda, SessaoVenda
from .status import legenda, status_color, status_label

# -----------------------------------------------------------------------------
# Config
# -----------------------------------------------------------------------------
load_dotenv()

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

log = logging.getLogger(__name__)

app = FastAPI(title="Vendas por Mesa", version="1.0")


@lru_cache(maxsize=1)
def get_service() -> PontoDeVenda:
    return PontoDeVenda()

# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------
class AbrirMesaRequest(BaseModel):
    operator_name: Optional[str] = None


class ItemRequest(BaseModel):
    product_code: str
    product_name: str
    quantity: int = 1
    unit_price: Optional[Decimal] = None
    weight_kg: Optional[Decimal] = None
    price_per_gram: Optional[Decimal] = None
    notes: Optional[str] = None


class QuantidadeRequest(BaseModel):
    quantity: int


class FinalizarRequest(BaseModel):
    payment_type: FormaPagamento = FormaPagamento.DINHEIRO
    discount: Decimal = Decimal("0")
    customer_name: Optional[str] = None
    customer_count: int = Field(default=1, ge=1)
    notes: Optional[str] = None
    change_amount: Optional[Decimal] = None
    amount_received: Optional[Decimal] = None

# -----------------------------------------------------------------------------
# Startup
# -----------------------------------------------------------------------------
@app.on_event("startup")
def _startup() -> None:
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------
@app.exception_handler(VendaMesaError)
async def _domain_error(_request: Request, exc: VendaMesaError) -> JSONResponse:
    log.warning("%s: %s", type(exc).__name__, exc)
    content: dict[str, Any] = {"detail": str(exc), "kind": type(exc).__name__}
    if isinstance(exc, ValidationError):
        status = 422
    elif isinstance(exc, PreconditionError):
        status = 409
    elif isinstance(exc, RemoteWriteError):
        status = 502
        content["step"] = exc.step
        content["entity_id"] = exc.entity_id
        if isinstance(exc, PartialCommitError):
            content["completed"] = list(exc.completed)
    else:
        status = 409
    return JSONResponse(status_code=status, content=content)

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _loja(loja: int) -> Loja:
    try:
        return Loja(loja)
    except ValueError:
        raise ValidationError(f"Loja desconhecida: {loja}") from None


def _item_out(item: ItemCarrinho) -> dict:
    return {
        "product_code": item.product_code,
        "product_name": item.product_name,
        "quantity": item.quantity,
        "unit_price": str(item.unit_price) if item.unit_price is not None else None,
        "weight_kg": str(item.weight_kg) if item.weight_kg is not None else None,
        "price_per_gram": str(item.price_per_gram) if item.price_per_gram is not None else None,
        "subtotal": str(item.subtotal),
        "notes": item.notes,
    }


def _mesa_out(aberta: MesaAtiva) -> dict:
    out = aberta.mesa.model_dump(mode="json")
    out["label"] = status_label(aberta.mesa.status)
    out["color"] = status_color(aberta.mesa.status)
    out["current_sale"] = aberta.current_sale.model_dump(mode="json") if aberta.current_sale else None
    return out


def _sessao_out(sessao: SessaoVenda) -> dict:
    return {
        "venda": sessao.venda.model_dump(mode="json"),
        "mesa": _mesa_out(MesaAtiva(sessao.mesa, sessao.venda)),
        "itens": [_item_out(i) for i in sessao.carrinho],
        "total": str(sessao.carrinho.total()),
    }


def _resultado_out(r: ResultadoFinalizacao) -> dict:
    return {
        "venda": r.venda.model_dump(mode="json"),
        "mesa": _mesa_out(MesaAtiva(r.mesa)),
        "itens": [i.model_dump(mode="json") for i in r.itens],
        "lancamento": r.lancamento.model_dump(mode="json") if r.lancamento else None,
        "avisos": r.avisos,
    }

# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------
@app.get("/health")
def health(svc: PontoDeVenda = Depends(get_service)) -> dict:
    return {"status": "ok", "modo": svc.modo.value}


@app.get("/status")
def status_legend() -> List[dict]:
    return legenda()


@app.get("/lojas/{loja}/mesas")
async def list_tables(loja: int, svc: PontoDeVenda = Depends(get_service)) -> List[dict]:
    return [_mesa_out(m) for m in await svc.list_tables(_loja(loja))]


@app.post("/lojas/{loja}/mesas/{mesa_id}/abrir")
async def open_table(
    loja: int, mesa_id: str, payload: AbrirMesaRequest, svc: PontoDeVenda = Depends(get_service)
) -> dict:
    sessao = await svc.open_table(_loja(loja), mesa_id, operator_name=payload.operator_name)
    return _sessao_out(sessao)


@app.post("/lojas/{loja}/mesas/{mesa_id}/liberar")
async def release_table(loja: int, mesa_id: str, svc: PontoDeVenda = Depends(get_service)) -> dict:
    mesa = await svc.release_table(_loja(loja), mesa_id)
    return _mesa_out(MesaAtiva(mesa))


@app.get("/vendas/{venda_id}/carrinho")
async def get_cart(venda_id: str, svc: PontoDeVenda = Depends(get_service)) -> dict:
    return _sessao_out(await svc.session(venda_id))


@app.post("/vendas/{venda_id}/itens")
async def add_item(venda_id: str, payload: ItemRequest, svc: PontoDeVenda = Depends(get_service)) -> dict:
    await svc.add_item(venda_id, **payload.model_dump())
    return _sessao_out(await svc.session(venda_id))


@app.patch("/vendas/{venda_id}/itens/{index}")
async def update_quantity(
    venda_id: str, index: int, payload: QuantidadeRequest, svc: PontoDeVenda = Depends(get_service)
) -> dict:
    await svc.update_quantity(venda_id, index, payload.quantity)
    return _sessao_out(await svc.session(venda_id))


@app.delete("/vendas/{venda_id}/itens/{index}")
async def remove_item(venda_id: str, index: int, svc: PontoDeVenda = Depends(get_service)) -> dict:
    await svc.remove_item(venda_id, index)
    return _sessao_out(await svc.session(venda_id))


@app.post("/vendas/{venda_id}/finalizar")
async def finalize_sale(venda_id: str, payload: FinalizarRequest, svc: PontoDeVenda = Depends(get_service)) -> dict:
    dados = DadosFechamento(**payload.model_dump())
    resultado = await svc.finalize_sale(venda_id, dados)
    return _resultado_out(resultado)


@app.post("/vendas/{venda_id}/finalizar/cancelar")
def cancel_finalization(venda_id: str, svc: PontoDeVenda = Depends(get_service)) -> dict:
    return {"cancelado": svc.cancel_finalization(venda_id)}
