"""
g3geo QR Proof-of-Presence Service

Businesses sign short-lived QR codes; a customer who scans one can publish
exactly one review, and only from within walking distance of the business.

Review gate, in order:
    1. QR fields present
    2. QR not expired
    3. Business signature valid (and bound to this business id and expiry)
    4. Reviewer within max distance of the business
    5. QR not consumed before
    6. Rating in 1..5
    7. Sign the review with the reviewer's key, then mark the QR consumed

Failures are returned as ReviewResult values, not raised.
"""

from __future__ import annotations

import json
import logging
import secrets
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union

from cryptography.hazmat.primitives.asymmetric import ed25519
from pydantic import ValidationError

from ..config import QrConfig
from ..core.codec import (
    KeyPair,
    decode_report,
    encode_report,
    generate_keypair,
    sign_bytes,
    sign_report,
    topic_for_type,
    verify_detached,
)
from ..core.proximity import distance_meters
from ..core.validation import GeoReportValidator
from ..errors import (
    BusinessNotRegistered,
    GeoBroadcastError,
    MalformedPayload,
    OutOfProximityRange,
    ProofAlreadyUsed,
    ReportExpired,
    ReviewResult,
    SignatureInvalid,
)
from ..models import (
    BusinessLocation,
    BusinessQrData,
    GeoLocation,
    GeoReportType,
    QrGenerationConfig,
    QrProof,
    RegisteredBusinessKeys,
    ReviewData,
    SignedReviewReport,
    now_ms,
)
from ..transport.base import P2PTransport, best_effort
from .replay_guard import ReplayGuard, qr_key


logger = logging.getLogger(__name__)


PrivateKeyLike = Union[ed25519.Ed25519PrivateKey, bytes]
PublicKeyLike = Union[ed25519.Ed25519PublicKey, bytes, str, None]


@dataclass
class BusinessKeys:
    """Keys and metadata held for a registered business."""
    business_id: str
    business_name: str
    location: GeoLocation
    keypair: KeyPair
    created_at: int

    @property
    def public_key_b64(self) -> str:
        return self.keypair.public_key_b64


def _as_private_key(key: PrivateKeyLike) -> ed25519.Ed25519PrivateKey:
    if isinstance(key, ed25519.Ed25519PrivateKey):
        return key
    return KeyPair.from_private_bytes(bytes(key)).private_key


def _nonce() -> str:
    return secrets.token_hex(6)


class QrProofService:
    """
    Issues business QR codes and gates reviews on them.

    Example:
        service = QrProofService(transport=transport, topic=config.transport.topic_review)
        keys = service.register_business("cafe-1", "Cafe One", location)
        qr = service.generate_signed_qr_code("cafe-1")

        result = service.validate_qr_code_and_create_review(
            qr, rating=5, comment="Great", user_location=here,
            user_private_key=user.private_key,
        )
        if result.success:
            await service.broadcast_review(result.review)
    """

    def __init__(
        self,
        transport: Optional[P2PTransport] = None,
        config: Optional[QrConfig] = None,
        replay_guard: Optional[ReplayGuard] = None,
        clock: Callable[[], int] = now_ms,
        topic: Optional[str] = None,
    ):
        self._transport = transport
        self._topic = topic or topic_for_type(GeoReportType.BUSINESS_REVIEW)
        self._config = config or QrConfig()
        self._clock = clock
        self._replay_guard = replay_guard or ReplayGuard(
            max_age_ms=self._config.replay_max_age_ms,
            sweep_interval_seconds=self._config.replay_sweep_interval_seconds,
            clock=clock,
        )
        self._validator = GeoReportValidator(clock=clock)
        self._businesses: Dict[str, BusinessKeys] = {}
        self._reviews: "OrderedDict[str, SignedReviewReport]" = OrderedDict()
        self._subscribed = False

    @property
    def replay_guard(self) -> ReplayGuard:
        return self._replay_guard

    @property
    def topic(self) -> str:
        return self._topic

    def start(self) -> None:
        self._replay_guard.start()

    async def close(self) -> None:
        await self._replay_guard.close()

    # =========================================================================
    # BUSINESS SIDE
    # =========================================================================

    def register_business(
        self,
        business_id: str,
        business_name: str,
        location: GeoLocation,
    ) -> RegisteredBusinessKeys:
        """
        Create and hold a signing keypair for a business.

        Re-registering an id replaces its keys; QR codes signed with the old
        key keep verifying since they embed their own public key.

        Returns:
            Base64 export of the new keypair
        """
        keypair = generate_keypair()
        self._businesses[business_id] = BusinessKeys(
            business_id=business_id,
            business_name=business_name,
            location=location,
            keypair=keypair,
            created_at=self._clock(),
        )
        logger.info(f"Registered business {business_id}")
        return RegisteredBusinessKeys(
            public_key=keypair.public_key_b64,
            private_key=keypair.private_key_b64,
        )

    def get_business_keys(self, business_id: str) -> Optional[BusinessKeys]:
        return self._businesses.get(business_id)

    def list_registered_businesses(self) -> List[str]:
        return list(self._businesses)

    def generate_signed_qr_code(
        self,
        business_id: str,
        config: Optional[QrGenerationConfig] = None,
    ) -> BusinessQrData:
        """
        Issue a fresh QR code for a registered business.

        Raises:
            BusinessNotRegistered: if `business_id` was never registered
        """
        business = self._businesses.get(business_id)
        if business is None:
            raise BusinessNotRegistered(f"Business not found: {business_id}")

        config = config or QrGenerationConfig(
            validity_duration_ms=self._config.validity_duration_ms
        )
        now = self._clock()
        valid_until = now + config.validity_duration_ms

        signed_timestamp = json.dumps(
            {
                "businessId": business_id,
                "timestamp": now,
                "validUntil": valid_until,
                "nonce": _nonce(),
            },
            separators=(",", ":"),
            ensure_ascii=False,
        )
        signature = sign_bytes(signed_timestamp.encode("utf-8"), business.keypair.private_key)

        logger.info(f"Generated QR code for {business_id}, valid until {valid_until}")
        return BusinessQrData(
            business_id=business_id,
            business_name=business.business_name,
            business_public_key=business.public_key_b64,
            signed_timestamp=signed_timestamp,
            signature=signature,
            valid_until=valid_until,
            location=BusinessLocation(
                latitude=business.location.latitude,
                longitude=business.location.longitude,
            ),
        )

    # =========================================================================
    # QR STRING FORMAT
    # =========================================================================

    @staticmethod
    def generate_qr_code_string(qr: BusinessQrData) -> str:
        return json.dumps(qr.to_wire(), separators=(",", ":"), ensure_ascii=False)

    @staticmethod
    def parse_qr_code_string(text: str) -> Optional[BusinessQrData]:
        """Parse scanned QR text. Returns None for anything malformed."""
        try:
            qr = BusinessQrData.model_validate_json(text)
        except ValidationError as e:
            logger.warning(f"Failed to parse QR code: {e.error_count()} validation error(s)")
            return None

        if not (qr.business_id and qr.business_public_key and qr.signed_timestamp and qr.signature):
            logger.warning("Invalid QR code format")
            return None
        return qr

    # =========================================================================
    # REVIEW GATE
    # =========================================================================

    def _check_qr(self, qr: BusinessQrData) -> None:
        if not (qr.business_id and qr.business_public_key and qr.signed_timestamp and qr.signature):
            raise MalformedPayload("Invalid QR code: missing required fields")

        if self._clock() > qr.valid_until:
            raise ReportExpired("QR code has expired")

        if not verify_detached(
            qr.signed_timestamp.encode("utf-8"), qr.signature, qr.business_public_key
        ):
            raise SignatureInvalid("Invalid QR code signature")

        # The signature covers only the blob, so the outer fields must agree with it
        try:
            signed = json.loads(qr.signed_timestamp)
        except json.JSONDecodeError:
            signed = None
        if (
            not isinstance(signed, dict)
            or signed.get("businessId") != qr.business_id
            or signed.get("validUntil") != qr.valid_until
        ):
            raise SignatureInvalid("Invalid QR code signature")

    def _check_presence(self, qr: BusinessQrData, user_location: GeoLocation) -> None:
        distance = distance_meters(user_location, qr.location)
        if distance > self._config.max_review_distance_meters:
            raise OutOfProximityRange(distance, self._config.max_review_distance_meters)

    def validate_qr_code_and_create_review(
        self,
        qr: BusinessQrData,
        rating: int,
        comment: Optional[str],
        user_location: GeoLocation,
        user_private_key: PrivateKeyLike,
        user_public_key: PublicKeyLike = None,
    ) -> ReviewResult:
        """
        Turn a scanned QR code into a signed review.

        Args:
            qr: Scanned QR contents
            rating: Star rating, 1 to 5
            comment: Free text
            user_location: Reviewer's current position
            user_private_key: Reviewer's Ed25519 key (object or raw bytes)
            user_public_key: Public key to embed (derived when omitted)

        Returns:
            ReviewResult with the signed review, or the failure kind and message
        """
        key = qr_key(qr.business_id, qr.signed_timestamp)
        try:
            self._check_qr(qr)
            self._check_presence(qr, user_location)

            if self._replay_guard.is_consumed(key):
                raise ProofAlreadyUsed("This QR code has already been used")

            if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
                raise MalformedPayload("Invalid rating (must be 1-5)")

            review_data = ReviewData(
                business_id=qr.business_id,
                business_name=qr.business_name,
                rating=rating,
                comment=comment,
                qr_proof=QrProof(
                    business_public_key=qr.business_public_key,
                    signed_timestamp=qr.signed_timestamp,
                    signature=qr.signature,
                    valid_until=qr.valid_until,
                ),
                categories=[],
                photos=[],
            )
            try:
                private_key = _as_private_key(user_private_key)
            except ValueError as e:
                raise MalformedPayload(f"Invalid reviewer key: {e}") from e

            review = sign_report(
                GeoReportType.BUSINESS_REVIEW,
                user_location,
                review_data,
                private_key,
                public_key=user_public_key,
                clock=self._clock,
            )
        except GeoBroadcastError as e:
            logger.info(
                f"Review for {qr.business_id or '?'} rejected: {e}",
                extra={"business_id": qr.business_id or None, "error_kind": e.kind},
            )
            return ReviewResult.failed(e)

        self._replay_guard.consume(key, valid_until=qr.valid_until)
        logger.info(f"Created review for {qr.business_name}: {rating} stars")
        return ReviewResult.ok(review)

    # =========================================================================
    # NETWORK
    # =========================================================================

    async def broadcast_review(self, review: SignedReviewReport) -> bool:
        """Publish a review on the review topic. Returns False on any failure."""
        if self._transport is None or not self._transport.is_initialized():
            logger.warning("Transport not initialized, cannot broadcast review")
            return False

        result = await best_effort(
            self._transport.publish(self._topic, encode_report(review)),
            "broadcast review",
        )
        if result:
            logger.info(
                f"Broadcast review for {review.data.business_name}",
                extra={"report_id": review.id, "business_id": review.data.business_id, "topic": self._topic},
            )
        return result.ok

    async def subscribe_reviews(self) -> bool:
        """Start accepting reviews from the review topic. Returns False without a transport."""
        if self._transport is None:
            return False
        if not self._subscribed:
            await self._transport.subscribe(self._topic, self._on_review_message)
            self._subscribed = True
        return True

    def _on_review_message(self, raw: bytes) -> None:
        try:
            report = decode_report(raw)
        except MalformedPayload as e:
            logger.warning(f"Dropping malformed review: {e}")
            return
        self.accept_review(report)

    def accept_review(self, report) -> bool:
        """
        Validate and store a review received from a peer.

        Returns:
            True if the review was stored
        """
        if not isinstance(report, SignedReviewReport):
            logger.warning(f"Dropping non-review report {report.id} from review topic")
            return False

        validation = self._validator.validate(report)
        if not validation.is_valid:
            logger.warning(
                f"Rejected review {report.id}: {', '.join(validation.errors)}",
                extra={
                    "report_id": report.id,
                    "business_id": report.data.business_id,
                    "error_kind": validation.error_kind,
                },
            )
            return False

        self._reviews[report.id] = report
        self._reviews.move_to_end(report.id)
        while len(self._reviews) > self._config.max_stored_reviews:
            self._reviews.popitem(last=False)
        return True

    def get_reviews_for_business(self, business_id: str) -> List[SignedReviewReport]:
        return [r for r in self._reviews.values() if r.data.business_id == business_id]

    def get_reviews_near(
        self, location: GeoLocation, radius_meters: float
    ) -> List[Tuple[SignedReviewReport, float]]:
        """Stored reviews within the radius, nearest first."""
        results = []
        for review in self._reviews.values():
            distance = distance_meters(review.location, location)
            if distance <= radius_meters:
                results.append((review, distance))
        results.sort(key=lambda pair: pair[1])
        return results
