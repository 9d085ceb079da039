from __future__ import annotations

import asyncio

import pytest
from sqlmodel import Session, select

from mesas.config import Modo
from mesas.db import make_engine, sql_stores
from mesas.finalization import PoliticaFinalizacao
from mesas.seed import seed_demo
from mesas.service import PontoDeVenda

MESA_1 = "demo-1-1"
MESA_2 = "demo-1-2"


def run(coro):
    return asyncio.run(coro)


def rows(engine, model):
    with Session(engine) as s:
        return list(s.exec(select(model)).all())


class Spy:
    """Envolve um store e registra as chamadas feitas a ele."""

    def __init__(self, inner):
        self._inner = inner
        self.calls = []

    def __getattr__(self, name):
        attr = getattr(self._inner, name)
        if not callable(attr):
            return attr

        def wrapper(*args, **kwargs):
            self.calls.append(name)
            return attr(*args, **kwargs)

        return wrapper


@pytest.fixture
def engine():
    eng = make_engine("")
    seed_demo(eng)
    return eng


@pytest.fixture
def engine_sem_caixa():
    eng = make_engine("")
    seed_demo(eng, com_caixa=False)
    return eng


@pytest.fixture
def stores(engine):
    return sql_stores(engine)


@pytest.fixture
def pdv(stores):
    return PontoDeVenda(modo=Modo.DEMO, stores=stores, politica=PoliticaFinalizacao(), timeout=5)
