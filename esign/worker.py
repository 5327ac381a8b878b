from celery import Celery

from .config import REDIS_URL, WORKER_QUEUE
from .deps import get_services
from .logger import get_logger

logger = get_logger(__name__)

cel = Celery("esign", broker=REDIS_URL, backend=REDIS_URL)


@cel.task(name="certify_envelope", queue=WORKER_QUEUE)
def certify_envelope(envelope_id: int):
    result = get_services().certification.certify(envelope_id)
    logger.info("certify_envelope_done", envelope_id=envelope_id, fallback_document=result.fallback_document)
    return result.model_dump()


def enqueue_certification(envelope_id: int) -> None:
    certify_envelope.delay(envelope_id)
    logger.info("certify_envelope_queued", envelope_id=envelope_id)
