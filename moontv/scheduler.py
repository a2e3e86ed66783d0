import datetime
import logging
import threading

# Retrieve main logger
logger = logging.getLogger('main')

_TICK_SECONDS = 1


class JobScheduler:
    """In-process interval scheduler running jobs on one daemon thread.

    Jobs live in `scheduled_jobs` keyed by id. Each entry holds the callable,
    its interval, the next run time and whether it fires only once. Callers may
    edit an entry directly while holding `_lock` to reschedule it.
    """

    def __init__(self):
        self.scheduled_jobs = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name='moontv-scheduler', daemon=True)

    def start(self):
        if not self._thread.is_alive():
            self._thread.start()

    def add_job(self, job_id, func, interval=None, run_first=False, run_once=False,
                start_date=None, log_level='info'):
        if interval is None and not run_once:
            raise ValueError(f'Job {job_id} needs an interval unless it runs once')
        now = datetime.datetime.now().replace(microsecond=0)
        if start_date is not None:
            next_run = start_date
        elif run_first or interval is None:
            next_run = now
        else:
            next_run = now + interval
        with self._lock:
            self.scheduled_jobs[job_id] = {
                'func': func,
                'interval': interval,
                'run_once': bool(run_once),
                'next_run': next_run,
                'log_level': log_level,
                'running': False,
            }
        getattr(logger, log_level, logger.info)(f'Scheduled job {job_id}, next run at {next_run}')

    def remove_job(self, job_id):
        with self._lock:
            return self.scheduled_jobs.pop(job_id, None) is not None

    def get_job(self, job_id):
        with self._lock:
            job = self.scheduled_jobs.get(job_id)
            return dict(job) if job else None

    def run_pending(self, now=None):
        """Start every due job. Returns the ids that were started."""
        now = now or datetime.datetime.now()
        due = []
        with self._lock:
            for job_id, job in list(self.scheduled_jobs.items()):
                if job['running'] or job['next_run'] > now:
                    continue
                job['running'] = True
                due.append((job_id, job))
                if job['run_once']:
                    self.scheduled_jobs.pop(job_id, None)
                else:
                    job['next_run'] = now.replace(microsecond=0) + job['interval']
        for job_id, job in due:
            threading.Thread(target=self._execute, args=(job_id, job), daemon=True).start()
        return [job_id for job_id, _ in due]

    def _execute(self, job_id, job):
        log = getattr(logger, job['log_level'], logger.info)
        log(f'Running job {job_id}')
        try:
            job['func']()
        except Exception as e:
            logger.error(f'Error during job {job_id}: {e}')
        finally:
            with self._lock:
                job['running'] = False

    def _run(self):
        while not self._stop_event.is_set():
            self.run_pending()
            self._stop_event.wait(_TICK_SECONDS)

    def shutdown(self):
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout=5)


def init_scheduler(app):
    app.scheduler = JobScheduler()
    app.scheduler.start()
    return app.scheduler
