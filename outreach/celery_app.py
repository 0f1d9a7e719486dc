from celery import Celery
from outreach.config import CALL_QUEUE, FAILED_JOB_RETENTION_S, REDIS_URL, VISIBILITY_TIMEOUT_S

celery_app = Celery("outreach", broker=REDIS_URL, backend=REDIS_URL, include=["worker.tasks"])

# One call per worker process: solo pool, one prefetched message, ack after the call.
celery_app.conf.worker_pool = "solo"
celery_app.conf.worker_concurrency = 1
celery_app.conf.worker_prefetch_multiplier = 1
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.task_track_started = True

celery_app.conf.task_default_queue = CALL_QUEUE
celery_app.conf.task_routes = {"worker.tasks.process_call_job": {"queue": CALL_QUEUE}}

# Must outlive JOB_TIMEOUT_S or a running call gets redelivered to another worker.
celery_app.conf.broker_transport_options = {"visibility_timeout": VISIBILITY_TIMEOUT_S}
celery_app.conf.result_expires = FAILED_JOB_RETENTION_S
