"""Per-student device fingerprint registry with cross-student reuse detection."""
import hashlib
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from secure_attendance import db
from secure_attendance.models.device_fingerprint import DeviceFingerprint
from secure_attendance.utils.errors import SystemUnavailable, ValidationError
from secure_attendance.utils.locks import KeyedLock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistrationResult:
    """What registering one observed fingerprint revealed."""

    is_new_device: bool
    is_shared_with_other: bool
    shared_with: Tuple[int, ...]
    device_changed: bool
    device_change_count: int

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['shared_with'] = list(self.shared_with)
        return data


@dataclass(frozen=True)
class ClientTraits:
    """Risk markers read from the raw signals before they are hashed away."""

    automated: bool = False
    virtual_machine: bool = False


class DeviceFingerprintRegistry:
    """Stores and matches device signatures per student.

    Sharing a device with another student is reported, never rejected here;
    the accept/reject policy belongs to the verifier and the fraud scorer.
    """

    # Client-supplied signals that make up the stable device identity
    SIGNAL_KEYS = (
        'userAgent', 'platform', 'language', 'timezone', 'screen',
        'hardware', 'canvas', 'webgl', 'audio', 'fonts'
    )
    MIN_FINGERPRINT_LENGTH = 8
    MAX_FINGERPRINT_LENGTH = 128

    AUTOMATION_MARKERS = ('bot', 'crawler', 'spider', 'headlesschrome', 'phantomjs', 'selenium')
    VIRTUAL_MACHINE_MARKERS = (
        'virtualbox', 'vmware', 'qemu', 'xen', 'hyper-v', 'parallels', 'docker', 'container'
    )

    def __init__(self, locks=None):
        self.locks = locks or KeyedLock()

    @classmethod
    def inspect_signals(cls, signals: Any) -> ClientTraits:
        """Flag bot and virtual-machine user agents in raw device signals."""
        if not isinstance(signals, dict):
            return ClientTraits()
        user_agent = str(signals.get('userAgent') or '').lower()
        return ClientTraits(
            automated=any(marker in user_agent for marker in cls.AUTOMATION_MARKERS),
            virtual_machine=any(marker in user_agent for marker in cls.VIRTUAL_MACHINE_MARKERS)
        )

    @classmethod
    def derive_fingerprint(cls, signals: Dict[str, Any]) -> str:
        """Hash hardware/browser signals into a stable signature.

        Volatile signals (battery, network, timestamps) are ignored so the
        same physical device keeps the same signature between sessions.
        """
        stable = {key: signals[key] for key in cls.SIGNAL_KEYS if key in signals}
        if not stable:
            raise ValidationError("device_fingerprint signals contain no usable fields")
        canonical = json.dumps(stable, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()

    @classmethod
    def normalize(cls, value: Any) -> str:
        """Accept either a precomputed signature or the raw signal object."""
        if isinstance(value, dict):
            return cls.derive_fingerprint(value)
        if not isinstance(value, str):
            raise ValidationError("device_fingerprint must be a string or an object")

        fingerprint = value.strip()
        if not cls.MIN_FINGERPRINT_LENGTH <= len(fingerprint) <= cls.MAX_FINGERPRINT_LENGTH:
            raise ValidationError(
                f"device_fingerprint must be {cls.MIN_FINGERPRINT_LENGTH}-"
                f"{cls.MAX_FINGERPRINT_LENGTH} characters"
            )
        return fingerprint

    def register(self, student_id: int, fingerprint: str,
                 window_start: datetime, now: datetime) -> RegistrationResult:
        """Record that ``student_id`` used ``fingerprint`` at ``now``.

        ``window_start`` bounds the sharing check: another student's use of
        the same fingerprint only counts if seen at or after it.
        """
        # Student first, then fingerprint; nothing takes them in the other order
        with self.locks.hold(('device-student', student_id)), \
                self.locks.hold(('device-fingerprint', fingerprint)):
            shared_with = self._shared_with(student_id, fingerprint, window_start)
            known_devices = self._device_count(student_id)

            existing = DeviceFingerprint.query.filter_by(
                student_id=student_id, fingerprint=fingerprint
            ).first()

            if existing is not None:
                existing.last_seen = now
                existing.seen_count += 1
                existing.is_active = True
                is_new = False
            else:
                db.session.add(DeviceFingerprint(
                    student_id=student_id,
                    fingerprint=fingerprint,
                    first_seen=now,
                    last_seen=now,
                    seen_count=1
                ))
                is_new = True

            try:
                db.session.commit()
            except IntegrityError:
                # Another worker inserted the same (student, fingerprint) first
                db.session.rollback()
                is_new = False
                self._touch(student_id, fingerprint, now)
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error("Device registry write failed: %s", e)
                raise SystemUnavailable("Device registry unavailable")

        device_changed = is_new and known_devices > 0
        total_devices = known_devices + (1 if is_new else 0)
        result = RegistrationResult(
            is_new_device=is_new,
            is_shared_with_other=bool(shared_with),
            shared_with=tuple(shared_with),
            device_changed=device_changed,
            device_change_count=max(0, total_devices - 1)
        )

        if result.is_shared_with_other:
            logger.warning("Fingerprint %s used by student %s is also active for students %s",
                           fingerprint[:12], student_id, list(shared_with))
        elif device_changed:
            logger.info("Student %s switched to a new device (%d known)", student_id, total_devices)

        return result

    @staticmethod
    def devices_for(student_id: int) -> List[DeviceFingerprint]:
        return DeviceFingerprint.query.filter_by(student_id=student_id) \
            .order_by(DeviceFingerprint.last_seen.desc()).all()

    # =================== INTERNALS ===================

    @staticmethod
    def _shared_with(student_id: int, fingerprint: str, window_start: datetime) -> List[int]:
        rows = db.session.query(DeviceFingerprint.student_id).filter(
            DeviceFingerprint.fingerprint == fingerprint,
            DeviceFingerprint.student_id != student_id,
            DeviceFingerprint.is_active.is_(True),
            DeviceFingerprint.last_seen >= window_start
        ).order_by(DeviceFingerprint.student_id).all()
        return [row[0] for row in rows]

    @staticmethod
    def _device_count(student_id: int) -> int:
        return db.session.query(func.count(DeviceFingerprint.id)).filter(
            DeviceFingerprint.student_id == student_id
        ).scalar() or 0

    @staticmethod
    def _touch(student_id: int, fingerprint: str, now: datetime) -> None:
        try:
            DeviceFingerprint.query.filter_by(
                student_id=student_id, fingerprint=fingerprint
            ).update({
                'last_seen': now,
                'seen_count': DeviceFingerprint.seen_count + 1
            }, synchronize_session=False)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Device registry write failed: %s", e)
            raise SystemUnavailable("Device registry unavailable")
