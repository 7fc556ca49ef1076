"""
Visibility Predicates — a small boolean expression tree over named fields.

The filter builders return these trees rather than queries. The persistence
layer translates them into its own query language; two translations ship
here: ``evaluate`` for in-memory records and ``to_sqlalchemy`` for mapped
SQLAlchemy models.

A null field never equals anything. There is no wildcard.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy import and_, false, or_, true
from sqlalchemy.sql.elements import ColumnElement


class Predicate(ABC):
    """Base class for predicate nodes."""

    @abstractmethod
    def evaluate(self, record: Mapping[str, Any]) -> bool:
        """Evaluate against a flat field mapping."""

    @abstractmethod
    def to_sqlalchemy(self, model: Any) -> ColumnElement:
        """Translate to a SQLAlchemy clause over a mapped class or column mapping."""

    @abstractmethod
    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly form, for logging."""

    def __and__(self, other: Predicate) -> Predicate:
        return all_of(self, other)

    def __or__(self, other: Predicate) -> Predicate:
        return any_of(self, other)


def _column(model: Any, field: str) -> Any:
    if isinstance(model, Mapping):
        return model[field]
    return getattr(model, field)


@dataclass(frozen=True)
class Equals(Predicate):
    field: str
    value: Any

    def __post_init__(self) -> None:
        if self.value is None:
            raise ValueError("Equals cannot compare against None; use IsNull")

    def evaluate(self, record: Mapping[str, Any]) -> bool:
        actual = record.get(self.field)
        return actual is not None and actual == self.value

    def to_sqlalchemy(self, model: Any) -> ColumnElement:
        return _column(model, self.field) == self.value

    def to_dict(self) -> dict[str, Any]:
        return {"eq": [self.field, self.value]}


@dataclass(frozen=True)
class IsNull(Predicate):
    field: str

    def evaluate(self, record: Mapping[str, Any]) -> bool:
        return record.get(self.field) is None

    def to_sqlalchemy(self, model: Any) -> ColumnElement:
        return _column(model, self.field).is_(None)

    def to_dict(self) -> dict[str, Any]:
        return {"is_null": self.field}


@dataclass(frozen=True)
class And(Predicate):
    terms: tuple[Predicate, ...]

    def evaluate(self, record: Mapping[str, Any]) -> bool:
        return all(term.evaluate(record) for term in self.terms)

    def to_sqlalchemy(self, model: Any) -> ColumnElement:
        return and_(*(term.to_sqlalchemy(model) for term in self.terms))

    def to_dict(self) -> dict[str, Any]:
        return {"and": [term.to_dict() for term in self.terms]}


@dataclass(frozen=True)
class Or(Predicate):
    terms: tuple[Predicate, ...]

    def evaluate(self, record: Mapping[str, Any]) -> bool:
        return any(term.evaluate(record) for term in self.terms)

    def to_sqlalchemy(self, model: Any) -> ColumnElement:
        return or_(*(term.to_sqlalchemy(model) for term in self.terms))

    def to_dict(self) -> dict[str, Any]:
        return {"or": [term.to_dict() for term in self.terms]}


@dataclass(frozen=True)
class Constant(Predicate):
    value: bool

    def evaluate(self, record: Mapping[str, Any]) -> bool:
        return self.value

    def to_sqlalchemy(self, model: Any) -> ColumnElement:
        return true() if self.value else false()

    def to_dict(self) -> dict[str, Any]:
        return {"const": self.value}


TRUE = Constant(True)
FALSE = Constant(False)


def all_of(*terms: Predicate) -> Predicate:
    """Conjunction with constant folding."""
    kept: list[Predicate] = []
    for term in terms:
        if term == FALSE:
            return FALSE
        if term == TRUE:
            continue
        if isinstance(term, And):
            kept.extend(term.terms)
        else:
            kept.append(term)
    if not kept:
        return TRUE
    if len(kept) == 1:
        return kept[0]
    return And(tuple(kept))


def any_of(*terms: Predicate) -> Predicate:
    """Disjunction with constant folding. An empty disjunction matches nothing."""
    kept: list[Predicate] = []
    for term in terms:
        if term == TRUE:
            return TRUE
        if term == FALSE:
            continue
        if isinstance(term, Or):
            kept.extend(term.terms)
        else:
            kept.append(term)
    if not kept:
        return FALSE
    if len(kept) == 1:
        return kept[0]
    return Or(tuple(kept))
