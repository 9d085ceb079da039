# mesas/config.py
from __future__ import annotations

import os
from enum import Enum

from dotenv import load_dotenv

load_dotenv()


class Modo(str, Enum):
    LIVE = "live"
    DEMO = "demo"


SUPABASE_URL: str = os.getenv("SUPABASE_URL", "").rstrip("/")
SUPABASE_ANON_KEY: str = os.getenv("SUPABASE_ANON_KEY", "")

# Timeout (segundos) aplicado a cada chamada remota
REMOTE_TIMEOUT: float = float(os.getenv("MESAS_TIMEOUT", "10"))

# Banco SQL local (modo demo usa memória quando vazio)
DB_URL: str = os.getenv("MESAS_DB_URL", "")

STATUS_POS_VENDA: str = os.getenv("MESAS_STATUS_POS_VENDA", "aguardando_conta")
CAIXA_SOMENTE_DINHEIRO: bool = os.getenv("MESAS_CAIXA_SOMENTE_DINHEIRO", "0").lower() in ("1", "true", "sim")

_PLACEHOLDERS = ("your_supabase_url_here", "your_supabase_anon_key_here")


def supabase_configurado(url: str = SUPABASE_URL, key: str = SUPABASE_ANON_KEY) -> bool:
    """True quando URL e chave existem e não são valores de exemplo."""
    if not url or not key:
        return False
    if url in _PLACEHOLDERS or key in _PLACEHOLDERS:
        return False
    return "placeholder" not in url


def resolve_modo(forcado: str | None = None) -> Modo:
    """
    Decide o modo uma única vez, na construção do serviço.
    - MESAS_MODO (ou `forcado`) tem prioridade
    - caso contrário, LIVE apenas se o Supabase estiver configurado
    """
    escolha = (forcado or os.getenv("MESAS_MODO", "")).strip().lower()
    if escolha:
        return Modo(escolha)
    return Modo.LIVE if supabase_configurado() else Modo.DEMO
