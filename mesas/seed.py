# mesas/seed.py
from __future__ import annotations

from sqlalchemy import text
from sqlmodel import Session

from .config import DB_URL
from .db import init_db, make_engine
from .models import Caixa, Loja, Mesa

# ---------- Mesas de demonstração (ajuste à vontade) ----------
MESAS_DEMO = [
    # (número, nome, capacidade, local)
    (1, "Mesa 1", 4, "Área interna"),
    (2, "Mesa 2", 2, "Área externa"),
]


def seed_demo(engine, com_caixa: bool = True) -> None:
    """Popula as mesas (e um caixa aberto) de cada loja. Idempotente."""
    init_db(engine)
    with Session(engine) as s:
        # limpa na ordem certa (FKs)
        s.exec(text("DELETE FROM cash_entries"))
        s.exec(text("DELETE FROM cash_registers"))
        s.exec(text("DELETE FROM table_sale_items"))
        s.exec(text("UPDATE restaurant_tables SET current_sale_id = NULL"))
        s.exec(text("DELETE FROM table_sales"))
        s.exec(text("DELETE FROM restaurant_tables"))

        for loja in Loja:
            for numero, nome, capacidade, local in MESAS_DEMO:
                s.add(
                    Mesa(
                        id=f"demo-{loja.value}-{numero}",
                        store_id=loja.value,
                        number=numero,
                        name=nome,
                        capacity=capacidade,
                        location=local,
                    )
                )
            if com_caixa:
                s.add(Caixa(id=f"caixa-demo-{loja.value}", store_id=loja.value, operator_name="Demo"))
        s.commit()


def run() -> None:
    engine = make_engine(DB_URL or "sqlite:///mesas.db")
    seed_demo(engine)
    print(f"Usando DB em: {engine.url}")

    with Session(engine) as s:
        def count(tbl): return s.exec(text(f"SELECT COUNT(*) FROM {tbl}")).one()[0]
        print("Contagens após seed:")
        print("  mesas :", count("restaurant_tables"))
        print("  caixas:", count("cash_registers"))


if __name__ == "__main__":
    run()
    print("Seed OK ✔")
