from outbox.services.job_store import SqlAlchemyJobStore
from outbox.services.outbox_worker import OutboxWorker, build_worker


def get_job_store() -> SqlAlchemyJobStore:
    return SqlAlchemyJobStore()


def get_outbox_worker() -> OutboxWorker:
    return build_worker()
