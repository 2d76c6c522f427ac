"""Registry of the PDRs, FARs and QERs installed for sessions."""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from upfcore.farqer import FAR, QER, ApplyAction
from upfcore.match import MatchRule, compile_match_rule
from upfcore.packets import MatchTable
from upfcore.pdr import PDR, UpfError


@dataclass
class RuleSet:
    """The rules that belong to one session, keyed by rule ID."""

    pdrs: dict[int, PDR] = field(default_factory=dict)
    fars: dict[int, FAR] = field(default_factory=dict)
    qers: dict[int, QER] = field(default_factory=dict)


@dataclass
class _Entry:
    rule: Any
    owner: RuleSet
    match_rule: Optional[MatchRule] = None


class RuleStore:
    """Rules of all sessions, looked up by ID, with PDRs mirrored into a match table."""

    def __init__(self, match_table: Optional[MatchTable] = None) -> None:
        self.match_table = match_table if match_table is not None else MatchTable()
        self._pdrs: dict[int, _Entry] = {}
        self._fars: dict[int, _Entry] = {}
        self._qers: dict[int, _Entry] = {}
        self._pdr_lock = threading.Lock()
        self._far_lock = threading.Lock()
        self._qer_lock = threading.Lock()

    def register_pdr(self, rules: RuleSet, pdr: PDR) -> PDR:
        """Install ``pdr``, replacing any PDR of the same ID and its match rule."""
        if rules is None or pdr is None:
            raise UpfError("Session or PDR should not be None")
        if pdr.pdr_id is None:
            raise UpfError("PDR ID should be set")
        stored = copy.deepcopy(pdr)
        match_rule = compile_match_rule(stored)
        with self._pdr_lock:
            entry = self._pdrs.get(stored.pdr_id)
            if entry is None:
                owner = rules
            else:
                owner = entry.owner
                if entry.match_rule is not None:
                    self.match_table.deregister(entry.match_rule)
            owner.pdrs[stored.pdr_id] = stored
            self._pdrs[stored.pdr_id] = _Entry(stored, owner, match_rule)
        self.match_table.register(match_rule)
        return stored

    @staticmethod
    def _register(table, lock, kind, attr, rule_id, rules, rule):
        if rules is None or rule is None:
            raise UpfError(f"Session or {kind} should not be None")
        if rule_id is None:
            raise UpfError(f"{kind} ID should be set")
        stored = copy.deepcopy(rule)
        with lock:
            entry = table.get(rule_id)
            owner = rules if entry is None else entry.owner
            getattr(owner, attr)[rule_id] = stored
            table[rule_id] = _Entry(stored, owner)
        return stored

    def register_far(self, rules: RuleSet, far: FAR) -> FAR:
        """Install ``far``, replacing any FAR of the same ID."""
        far_id = far.far_id if far is not None else None
        return self._register(self._fars, self._far_lock, "FAR", "fars", far_id, rules, far)

    def register_qer(self, rules: RuleSet, qer: QER) -> QER:
        """Install ``qer``, replacing any QER of the same ID."""
        qer_id = qer.qer_id if qer is not None else None
        return self._register(self._qers, self._qer_lock, "QER", "qers", qer_id, rules, qer)

    @staticmethod
    def _remove(table, kind, attr, rules, rule_id) -> _Entry:
        if rules is None:
            raise UpfError("Session should not be None")
        entry = table.pop(rule_id, None)
        if entry is None:
            raise UpfError(f"{kind} ID[{rule_id}] does NOT exist")
        getattr(entry.owner, attr).pop(rule_id, None)
        return entry

    def deregister_pdr(self, rules: RuleSet, pdr_id: int) -> None:
        """Remove PDR ``pdr_id`` and its match rule."""
        with self._pdr_lock:
            entry = self._remove(self._pdrs, "PDR", "pdrs", rules, pdr_id)
            if entry.match_rule is not None:
                self.match_table.deregister(entry.match_rule)

    def deregister_far(self, rules: RuleSet, far_id: int) -> None:
        """Remove FAR ``far_id``."""
        with self._far_lock:
            self._remove(self._fars, "FAR", "fars", rules, far_id)

    def deregister_qer(self, rules: RuleSet, qer_id: int) -> None:
        """Remove QER ``qer_id``."""
        with self._qer_lock:
            self._remove(self._qers, "QER", "qers", rules, qer_id)

    @staticmethod
    def _find(table, lock, rule_id):
        with lock:
            entry = table.get(rule_id)
            return None if entry is None else copy.deepcopy(entry.rule)

    def find_pdr(self, pdr_id: int) -> Optional[PDR]:
        """A copy of PDR ``pdr_id``, or None."""
        return self._find(self._pdrs, self._pdr_lock, pdr_id)

    def find_far(self, far_id: int) -> Optional[FAR]:
        """A copy of FAR ``far_id``, or None."""
        return self._find(self._fars, self._far_lock, far_id)

    def find_qer(self, qer_id: int) -> Optional[QER]:
        """A copy of QER ``qer_id``, or None."""
        return self._find(self._qers, self._qer_lock, qer_id)

    def apply_action(self, far_id: int) -> ApplyAction:
        """The apply action of FAR ``far_id``; raises UpfError when it does not exist."""
        with self._far_lock:
            entry = self._fars.get(far_id)
            if entry is None:
                raise UpfError(f"FAR ID[{far_id}] does NOT exist")
            action = entry.rule.apply_action
            return ApplyAction(0) if action is None else action

    def clear(self, rules: RuleSet) -> None:
        """Remove every PDR, FAR and QER held in ``rules``."""
        for pdr_id in list(rules.pdrs):
            self.deregister_pdr(rules, pdr_id)
        for far_id in list(rules.fars):
            self.deregister_far(rules, far_id)
        for qer_id in list(rules.qers):
            self.deregister_qer(rules, qer_id)