"""Troop scoping for repository queries.

Every query over troop-owned rows builds its tenant filter through ``tenant_predicate``,
so a repository call that lost its troop fails loudly instead of reading across troops.
"""

from __future__ import annotations

from typing import Union

from sqlalchemy import ColumnElement

from quartermaster.core.config import get_settings
from quartermaster.domain.models import IdempotencyRecord, Item, Principal, Tenant, Transaction


TroopScopedModel = Union[type[Item], type[Principal], type[Transaction], type[IdempotencyRecord]]
_TROOP_SCOPED: tuple[type, ...] = (Item, Principal, Transaction, IdempotencyRecord)


class TenantPredicateError(RuntimeError):
    """A troop-scoped query was built without a troop."""

    def __init__(self, model: type, reason: str) -> None:
        super().__init__(f"{model.__name__}: {reason}")
        self.model = model
        self.reason = reason


def troop_id_of(tenant: Tenant | str | None) -> str | None:
    if isinstance(tenant, Tenant):
        return tenant.id
    return tenant


def tenant_predicate(model: TroopScopedModel, tenant: Tenant | str | None) -> ColumnElement[bool]:
    if model not in _TROOP_SCOPED:
        raise TenantPredicateError(model, "model is not scoped to a troop")
    tenant_id = troop_id_of(tenant)
    if not tenant_id and get_settings().authz_require_tenant_predicate:
        raise TenantPredicateError(model, "query has no troop id")
    return model.tenant_id == tenant_id
