# mesas/cart.py
"""
Carrinho em memória de uma venda de mesa.

Cada item tem exatamente um modo de preço:
- unitário: subtotal = quantity * unit_price
- pesável:  subtotal = weight_kg * 1000 * price_per_gram

O subtotal é sempre recalculado a partir de quantidade/peso; nunca é atribuído direto.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterator, List, Optional

from .errors import ValidationError
from .models import CENTAVOS, ZERO, ItemVenda

GRAMAS_POR_KG = Decimal(1000)


def to_decimal(value: object, campo: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{campo} inválido: {value!r}")
    try:
        dec = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{campo} inválido: {value!r}") from None
    if not dec.is_finite():
        raise ValidationError(f"{campo} inválido: {value!r}")
    return dec


def money(value: Decimal) -> Decimal:
    return value.quantize(CENTAVOS, rounding=ROUND_HALF_UP)


@dataclass
class ItemCarrinho:
    product_code: str
    product_name: str
    quantity: int = 1
    unit_price: Optional[Decimal] = None
    weight_kg: Optional[Decimal] = None
    price_per_gram: Optional[Decimal] = None
    notes: Optional[str] = None
    subtotal: Decimal = field(default=ZERO, init=False)

    def __post_init__(self) -> None:
        self.recompute()

    @property
    def pesavel(self) -> bool:
        return self.weight_kg is not None

    def recompute(self) -> Decimal:
        if self.pesavel:
            self.subtotal = money(self.weight_kg * GRAMAS_POR_KG * self.price_per_gram)
        else:
            self.subtotal = money(self.quantity * self.unit_price)
        return self.subtotal

    def to_item_venda(self, sale_id: str, line_index: int) -> ItemVenda:
        return ItemVenda(
            sale_id=sale_id,
            line_index=line_index,
            product_code=self.product_code,
            product_name=self.product_name,
            quantity=self.quantity,
            weight_kg=self.weight_kg,
            unit_price=self.unit_price,
            price_per_gram=self.price_per_gram,
            discount_amount=ZERO,
            subtotal=self.subtotal,
            notes=self.notes,
        )


class Carrinho:
    """Sequência ordenada de itens; a ordem de inserção é a ordem de exibição."""

    def __init__(self) -> None:
        self._itens: List[ItemCarrinho] = []

    def __len__(self) -> int:
        return len(self._itens)

    def __iter__(self) -> Iterator[ItemCarrinho]:
        return iter(self._itens)

    def __getitem__(self, index: int) -> ItemCarrinho:
        return self._itens[self._check_index(index)]

    @property
    def itens(self) -> List[ItemCarrinho]:
        return list(self._itens)

    def add_item(
        self,
        product_code: str,
        product_name: str,
        quantity: int = 1,
        unit_price: object = None,
        weight_kg: object = None,
        price_per_gram: object = None,
        notes: Optional[str] = None,
    ) -> ItemCarrinho:
        code = (product_code or "").strip()
        name = (product_name or "").strip()
        if not code or not name:
            raise ValidationError("Código e nome do produto são obrigatórios.")
        qty = _quantidade(quantity)

        if weight_kg is not None or price_per_gram is not None:
            if unit_price is not None:
                raise ValidationError("Item pesável não aceita preço unitário.")
            peso = to_decimal(weight_kg, "weight_kg")
            ppg = to_decimal(price_per_gram, "price_per_gram")
            if peso <= 0 or ppg <= 0:
                raise ValidationError("Peso e preço por grama devem ser maiores que zero.")
            item = ItemCarrinho(code, name, qty, weight_kg=peso, price_per_gram=ppg, notes=notes)
        else:
            preco = to_decimal(unit_price, "unit_price")
            if preco <= 0:
                raise ValidationError("Preço unitário deve ser maior que zero.")
            item = ItemCarrinho(code, name, qty, unit_price=preco, notes=notes)

        self._itens.append(item)
        return item

    def update_quantity(self, index: int, quantity: int) -> Optional[ItemCarrinho]:
        """Quantidade <= 0 remove o item (retorna None)."""
        idx = self._check_index(index)
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError(f"Quantidade inválida: {quantity!r}")
        if quantity <= 0:
            self.remove_item(idx)
            return None
        item = self._itens[idx]
        item.quantity = quantity
        item.recompute()
        return item

    def remove_item(self, index: int) -> ItemCarrinho:
        return self._itens.pop(self._check_index(index))

    def total(self) -> Decimal:
        return sum((i.subtotal for i in self._itens), ZERO)

    def clear(self) -> None:
        self._itens.clear()

    def _check_index(self, index: int) -> int:
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < len(self._itens):
            raise ValidationError(f"Item {index!r} não existe no carrinho.")
        return index


def _quantidade(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"Quantidade deve ser inteira e >= 1: {value!r}")
    return value
