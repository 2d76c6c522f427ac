"""Handling of PFCP session and association requests on the N4 interface."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Optional

from upfcore.datapath import DataPath
from upfcore.farqer import FAR, QER, ApplyAction, FARIEs, QERIEs, far_from_ies, qer_from_ies
from upfcore.pdr import PDR, PDRIEs, UpfError, pdr_from_ies
from upfcore.session import Session, UpfContext

log = logging.getLogger(__name__)


class Cause(IntEnum):
    """PFCP Cause values (TS 29.244 8.2.1)."""

    REQUEST_ACCEPTED = 1
    REQUEST_REJECTED = 64
    SESSION_CONTEXT_NOT_FOUND = 65
    MANDATORY_IE_MISSING = 66
    CONDITIONAL_IE_MISSING = 67
    INVALID_LENGTH = 68
    MANDATORY_IE_INCORRECT = 69


@dataclass
class EstablishmentRequest:
    """Rules and control plane SEID carried by a Session Establishment Request."""

    create_pdrs: list[PDRIEs] = field(default_factory=list)
    create_fars: list[FARIEs] = field(default_factory=list)
    create_qers: list[QERIEs] = field(default_factory=list)
    cp_seid: Optional[int] = None


@dataclass
class ModificationRequest:
    """Rule changes carried by a Session Modification Request."""

    create_pdrs: list[PDRIEs] = field(default_factory=list)
    create_fars: list[FARIEs] = field(default_factory=list)
    create_qers: list[QERIEs] = field(default_factory=list)
    update_pdrs: list[PDRIEs] = field(default_factory=list)
    update_fars: list[FARIEs] = field(default_factory=list)
    update_qers: list[QERIEs] = field(default_factory=list)
    remove_pdr_ids: list[int] = field(default_factory=list)
    remove_far_ids: list[int] = field(default_factory=list)
    remove_qer_ids: list[int] = field(default_factory=list)


def _require_session(session: Optional[Session]) -> Session:
    if session is None:
        raise UpfError("session not found")
    return session


class N4Handler:
    """Applies N4 requests to the rules and sessions of a user plane context."""

    def __init__(self, context: UpfContext, datapath: Optional[DataPath] = None) -> None:
        self.context = context
        self.datapath = datapath

    # Create

    def create_pdr(self, session: Session, ies: PDRIEs) -> PDR:
        """Install a new PDR in ``session`` and open its buffering slot."""
        log.debug("Handle Create PDR")
        _require_session(session)
        if ies.pdr_id is None:
            raise UpfError("pdr id not presence")
        if ies.precedence is None:
            raise UpfError("precedence not presence")
        if ies.pdi is None:
            raise UpfError("Pdi not exist")
        if ies.pdi.source_interface is None:
            raise UpfError("PDI SourceInterface not presence")

        pdr = pdr_from_ies(ies)
        if self.context.rules.find_pdr(pdr.pdr_id) is not None:
            raise UpfError(f"PDR ID[{pdr.pdr_id}] does exist in UPF Context")
        stored = self.context.rules.register_pdr(session.rules, pdr)
        self.context.add_buf_packet(session, pdr.pdr_id)
        return stored

    def create_far(self, session: Session, ies: FARIEs) -> FAR:
        """Install a new FAR in ``session``."""
        log.debug("Handle Create FAR")
        _require_session(session)
        if ies.far_id is None:
            raise UpfError("Far ID not presence")
        if ies.apply_action is None:
            raise UpfError("Apply Action not presence")

        far = far_from_ies(ies)
        if self.context.rules.find_far(far.far_id) is not None:
            raise UpfError(f"FAR ID[{far.far_id}] does exist in UPF Context")
        return self.context.rules.register_far(session.rules, far)

    def create_qer(self, session: Session, ies: QERIEs) -> QER:
        """Install a new QER in ``session``."""
        log.debug("Handle Create QER")
        _require_session(session)
        if ies.qer_id is None:
            raise UpfError("Qer ID not presence")
        if ies.gate_status is None:
            raise UpfError("Gate Status not presence")

        qer = qer_from_ies(ies)
        if self.context.rules.find_qer(qer.qer_id) is not None:
            raise UpfError(f"QER ID[{qer.qer_id}] does exist in UPF Context")
        return self.context.rules.register_qer(session.rules, qer)

    # Update

    def update_pdr(self, session: Session, ies: PDRIEs) -> PDR:
        """Apply ``ies`` on top of the stored PDR of the same ID."""
        log.debug("Handle Update PDR")
        _require_session(session)
        if ies.pdr_id is None:
            raise UpfError("updatePDR no pdrId")
        pdr_id = int.from_bytes(bytes(ies.pdr_id[:2]), "big")
        existing = self.context.rules.find_pdr(pdr_id)
        if existing is None:
            raise UpfError(f"PDR ID[{pdr_id}] does NOT exist in UPF Context")
        pdr = pdr_from_ies(ies, existing)
        return self.context.rules.register_pdr(session.rules, pdr)

    def update_far(self, session: Session, ies: FARIEs) -> FAR:
        """Apply ``ies`` on top of the stored FAR and release packets it was buffering."""
        log.debug("Handle Update FAR")
        _require_session(session)
        if ies.far_id is None:
            raise UpfError("Far ID not presence")
        far_id = int.from_bytes(bytes(ies.far_id[:4]), "big")
        existing = self.context.rules.find_far(far_id)
        if existing is None:
            raise UpfError(f"FAR ID[{far_id}] does NOT exist in UPF Context")
        far = far_from_ies(ies, existing)

        old_action = self.context.rules.apply_action(far_id)
        stored = self.context.rules.register_far(session.rules, far)

        if old_action & ApplyAction.BUFF:
            self._release_buffered(session, far)
        return stored

    def _release_buffered(self, session: Session, far: FAR) -> None:
        action = far.apply_action if far.apply_action is not None else ApplyAction(0)
        pdrs = list(session.rules.pdrs.values())
        if action & ApplyAction.DROP:
            for pdr in pdrs:
                buf_packet = self.context.find_buf_packet(pdr.pdr_id)
                if buf_packet is None:
                    log.error("No buffer slot for PDR ID[%s]", pdr.pdr_id)
                    continue
                self.context.remove_buf_packet(buf_packet)
        elif action & ApplyAction.FORW:
            if self.datapath is None:
                log.warning("No data path to forward buffered packets")
                return
            for pdr in pdrs:
                try:
                    self.datapath.send_buffered_packets(pdr, far)
                except UpfError as exc:
                    log.error(
                        "UpSendPacketByPdrFar failed: PDR ID[%s], FAR ID[%s]: %s",
                        pdr.pdr_id, pdr.far_id, exc,
                    )

    def update_qer(self, session: Session, ies: QERIEs) -> QER:
        """Apply ``ies`` on top of the stored QER of the same ID."""
        log.debug("Handle Update QER")
        _require_session(session)
        if ies.qer_id is None:
            raise UpfError("Qer ID not presence")
        qer_id = int.from_bytes(bytes(ies.qer_id[:4]), "big")
        existing = self.context.rules.find_qer(qer_id)
        if existing is None:
            raise UpfError(f"QER ID[{qer_id}] does NOT exist in UPF Context")
        qer = qer_from_ies(ies, existing)
        return self.context.rules.register_qer(session.rules, qer)

    # Remove

    def remove_pdr(self, session: Session, pdr_id: int) -> None:
        """Remove PDR ``pdr_id`` and the packets buffered for it."""
        log.debug("Handle Remove PDR[%s]", pdr_id)
        if not pdr_id:
            raise UpfError("PDR ID cannot be 0")
        _require_session(session)
        if self.context.rules.find_pdr(pdr_id) is None:
            raise UpfError(f"PDR ID[{pdr_id}] does NOT exist in UPF Context")
        buf_packet = self.context.find_buf_packet(pdr_id)
        if buf_packet is not None:
            self.context.remove_buf_packet(buf_packet)
        self.context.rules.deregister_pdr(session.rules, pdr_id)

    def remove_far(self, session: Session, far_id: int) -> None:
        """Remove FAR ``far_id``."""
        log.debug("Handle Remove FAR[%s]", far_id)
        if not far_id:
            raise UpfError("farId should not be 0")
        _require_session(session)
        if self.context.rules.find_far(far_id) is None:
            raise UpfError(f"FAR ID[{far_id}] does NOT exist in UPF Context")
        self.context.rules.deregister_far(session.rules, far_id)

    def remove_qer(self, session: Session, qer_id: int) -> None:
        """Remove QER ``qer_id``."""
        log.debug("Handle Remove QER[%s]", qer_id)
        if not qer_id:
            raise UpfError("qerId should not be 0")
        _require_session(session)
        if self.context.rules.find_qer(qer_id) is None:
            raise UpfError(f"QER ID[{qer_id}] does NOT exist in UPF Context")
        self.context.rules.deregister_qer(session.rules, qer_id)

    # Requests

    def handle_session_establishment(
        self, session: Session, request: EstablishmentRequest
    ) -> Cause:
        """Install the rules of ``request``; the cause reports whether all went in."""
        _require_session(session)
        if request is None:
            raise UpfError("request error")
        cause = Cause.REQUEST_ACCEPTED

        steps = (
            (request.create_fars, self.create_far, "Create FAR error"),
            (request.create_qers, self.create_qer, "Create QER error"),
            (request.create_pdrs, self.create_pdr, "Create PDR Error"),
        )
        for items, create, message in steps:
            for ies in items:
                try:
                    create(session, ies)
                except UpfError as exc:
                    log.error("%s: %s", message, exc)
                    cause = Cause.REQUEST_REJECTED

        if request.cp_seid is None:
            log.error("Session Establishment Response: No CP F-SEID")
            cause = Cause.MANDATORY_IE_MISSING
        else:
            session.smf_seid = request.cp_seid

        log.info("[PFCP] Session Establishment Response")
        return cause

    def handle_session_modification(
        self, session: Session, request: ModificationRequest
    ) -> Cause:
        """Apply the changes of ``request`` in order; the first failure raises UpfError."""
        _require_session(session)
        if request is None:
            raise UpfError("request error")

        for ies in request.create_fars:
            self.create_far(session, ies)
        for ies in request.create_qers:
            self.create_qer(session, ies)
        for ies in request.create_pdrs:
            self.create_pdr(session, ies)
        for ies in request.update_fars:
            self.update_far(session, ies)
        for ies in request.update_qers:
            self.update_qer(session, ies)
        for ies in request.update_pdrs:
            self.update_pdr(session, ies)
        for far_id in request.remove_far_ids:
            self.remove_far(session, far_id)
        for qer_id in request.remove_qer_ids:
            self.remove_qer(session, qer_id)
        for pdr_id in request.remove_pdr_ids:
            self.remove_pdr(session, pdr_id)

        log.info("[PFCP] Session Modification Response")
        return Cause.REQUEST_ACCEPTED

    def handle_session_deletion(self, session: Session) -> Cause:
        """Remove ``session`` with all its rules."""
        _require_session(session)
        self.context.remove_session(session)
        log.info("[PFCP] Session Deletion Response")
        return Cause.REQUEST_ACCEPTED

    def handle_association_release(self, node: Any) -> Cause:
        """Remove every session that belongs to the PFCP peer ``node``."""
        if node is None:
            raise UpfError("gNode of xact error")
        for session in self.context.sessions:
            if session.pfcp_node is node:
                self.context.remove_session(session)
        log.info("[PFCP] Association Release Request")
        return Cause.REQUEST_ACCEPTED