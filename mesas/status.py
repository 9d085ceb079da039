# mesas/status.py
from __future__ import annotations

from typing import Dict, List

from .models import StatusMesa

_LABELS: Dict[str, str] = {
    StatusMesa.LIVRE.value: "Livre",
    StatusMesa.OCUPADA.value: "Ocupada",
    StatusMesa.AGUARDANDO_CONTA.value: "Aguardando Conta",
    StatusMesa.LIMPEZA.value: "Limpeza",
}

_COLORS: Dict[str, str] = {
    StatusMesa.LIVRE.value: "green",
    StatusMesa.OCUPADA.value: "red",
    StatusMesa.AGUARDANDO_CONTA.value: "yellow",
    StatusMesa.LIMPEZA.value: "blue",
}

DEFAULT_COLOR = "gray"


def _key(status: object) -> str:
    return status.value if isinstance(status, StatusMesa) else str(status)


def status_label(status: object) -> str:
    """Rótulo de exibição; status desconhecido volta como veio."""
    key = _key(status)
    return _LABELS.get(key, key)


def status_color(status: object) -> str:
    return _COLORS.get(_key(status), DEFAULT_COLOR)


def legenda() -> List[dict]:
    return [
        {"status": s.value, "label": status_label(s), "color": status_color(s)}
        for s in StatusMesa
    ]
