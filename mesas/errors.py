# mesas/errors.py
from __future__ import annotations

from typing import Optional, Sequence


class VendaMesaError(Exception):
    """Raiz dos erros do núcleo de vendas por mesa."""


class ValidationError(VendaMesaError):
    """Entrada inválida do carrinho/operador. Detectada antes de qualquer chamada remota."""


class PreconditionError(VendaMesaError):
    """Mesa ou venda fora do status esperado para a operação."""


class ConflictError(PreconditionError):
    """A mesa não está livre (ou deixou de estar durante a abertura)."""


class RemoteWriteError(VendaMesaError):
    def __init__(self, step: str, entity_id: object = None, cause: Optional[BaseException] = None):
        self.step = step
        self.entity_id = entity_id
        self.cause = cause
        msg = f"Falha na etapa '{step}'"
        if entity_id is not None:
            msg += f" (id={entity_id})"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class PartialCommitError(RemoteWriteError):
    """Uma etapa posterior falhou depois que etapas anteriores já foram gravadas."""

    def __init__(
        self,
        step: str,
        entity_id: object = None,
        cause: Optional[BaseException] = None,
        completed: Sequence[str] = (),
    ):
        self.completed = tuple(completed)
        super().__init__(step, entity_id, cause)


class FinalizacaoCancelada(VendaMesaError):
    """Finalização abortada antes da venda ser gravada; nada foi alterado."""
