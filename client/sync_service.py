"""
Sync orchestrator for BioSync.
Drives recurring sync cycles against the vendor API and streams one result
per pipeline step to any registered listener.
"""

import threading
from typing import Any, Callable, Dict, List, Optional

from client.api_client import (STEP_LOGIN, STEP_SYSTEM, BioTimeClient,
                               api_operation)
from shared.errors import ConfigError, NoOpError, SyncError
from shared.logging_config import get_sync_logger
from shared.models import (DEFAULT_SYNC_PERIOD, ApiResponse, Device,
                           SyncPeriod, SyncResult)
from shared.store import JsonStore
from shared.utils import validate_server_url

logger = get_sync_logger()

ResultSink = Callable[[SyncResult], Any]

DEFAULT_INTERVALS = {period.value: period.interval_seconds for period in SyncPeriod}


class SyncSchedule:
    """Repeating timer on a daemon thread.

    ``cancel()`` only prevents future ticks; a cycle already running is left
    to finish.
    """

    def __init__(self, interval_seconds: float, callback: Callable[[], Any], name: str = 'sync-schedule'):
        self.interval = interval_seconds
        self._callback = callback
        self._cancelled = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> 'SyncSchedule':
        self._thread.start()
        return self

    def cancel(self):
        self._cancelled.set()

    @property
    def active(self) -> bool:
        return not self._cancelled.is_set() and self._thread.is_alive()

    def _run(self):
        while not self._cancelled.wait(self.interval):
            try:
                self._callback()
            except Exception:
                logger.exception("Scheduled sync cycle failed")


class SyncService:
    """
    Scheduler and state machine for sync cycles:
    - Login and immediate first cycle on start
    - One repeating timer at a time
    - Skips a tick while the previous cycle is still running
    - Keeps the persisted running flag in line with the real timer state
    """

    def __init__(self, store: JsonStore, api_client: BioTimeClient,
                 intervals: Optional[Dict[str, float]] = None):
        self.store = store
        self.api = api_client
        self.intervals = dict(intervals or DEFAULT_INTERVALS)

        self._schedule: Optional[SyncSchedule] = None
        self._result_sink: Optional[ResultSink] = None
        self._listeners: List[ResultSink] = []

        # Guards schedule start/stop and drift correction
        self._state_lock = threading.RLock()
        # One sync cycle at a time
        self._cycle_lock = threading.Lock()
        # Bumped by every start and stop; a start that was superseded while
        # logging in does not arm its timer
        self._generation = 0
        self._pending_start: Optional[int] = None

    # Result stream

    def add_result_listener(self, listener: ResultSink):
        """Register a callable receiving every SyncResult"""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_result_listener(self, listener: ResultSink):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, result: SyncResult):
        if result.success:
            logger.info(f"[{result.api}] {result.message or 'OK'}")
        else:
            logger.warning(f"[{result.api}] {result.error}")

        targets = list(self._listeners)
        if self._result_sink is not None:
            targets.insert(0, self._result_sink)

        for target in targets:
            try:
                target(result)
            except Exception as e:
                logger.error(f"Result listener error: {e}")

    # Cycles

    def _run_cycle(self) -> Optional[List[SyncResult]]:
        """Run one sync sequence and stream its results. Returns None if skipped."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Previous sync cycle still running, skipping this tick")
            return None

        try:
            try:
                results = self.api.run_sync_sequence()
            except Exception as e:
                logger.exception("Sync cycle failed")
                results = [SyncResult(api=STEP_SYSTEM, success=False, error=f"Sync cycle failed: {e}")]

            for result in results:
                self._emit(result)
            return results
        finally:
            self._cycle_lock.release()

    def _interval_for(self, period: Any) -> str:
        if not SyncPeriod.is_valid(period):
            logger.warning(f"Unknown sync period {period!r}, falling back to {DEFAULT_SYNC_PERIOD} minutes")
        return SyncPeriod.parse(period).value

    def _is_current(self, generation: int) -> bool:
        with self._state_lock:
            return generation == self._generation

    def _cancel_schedule(self) -> bool:
        """Cancel the active timer. Returns True if one was running."""
        schedule, self._schedule = self._schedule, None
        if schedule is None:
            return False
        was_active = schedule.active
        schedule.cancel()
        return was_active

    # Lifecycle

    @api_operation('Start Sync')
    def start_sync(self, period: Any, credentials: Dict[str, str],
                   result_sink: Optional[ResultSink] = None) -> ApiResponse:
        """Log in, run one cycle immediately, then repeat every period.

        Login failure leaves nothing scheduled and the persisted flag false.
        The state lock is not held across the login and the first cycle, so
        status queries and ``stop_sync`` answer while a start is in progress.
        A start superseded by another start or a stop does not arm its timer.
        """
        with self._state_lock:
            self._cancel_schedule()
            self._generation += 1
            generation = self._generation

            period_key = self._interval_for(period)
            credentials = credentials or {}
            username = credentials.get('username')
            password = credentials.get('password')
            if not username or not password:
                self._pending_start = None
                self.store.update_sync_status(False)
                raise ConfigError('Username and password are required to start sync')

            self._pending_start = generation
            self._result_sink = result_sink
            self.store.save_sync_period(period_key)
            self.store.update_sync_status(True)

        login = self.api.login(username, password)
        if not login.success:
            self._emit(SyncResult(api=STEP_LOGIN, success=False, error=login.error))
            with self._state_lock:
                if generation == self._generation:
                    self._pending_start = None
                    self.store.update_sync_status(False)
            return ApiResponse(False, error=f"Login failed: {login.error}",
                               error_type=login.error_type)

        if not self._is_current(generation):
            raise NoOpError('Sync start was cancelled')

        self._emit(SyncResult(api=STEP_LOGIN, success=True, message='Authentication successful'))

        self._run_cycle()

        with self._state_lock:
            if generation != self._generation:
                raise NoOpError('Sync start was cancelled')

            interval = self.intervals[period_key]
            self._schedule = SyncSchedule(interval, self._run_cycle).start()
            self._pending_start = None
            self.store.update_sync_status(True)

        logger.info(f"Sync scheduled every {period_key} minutes ({interval}s)")
        return ApiResponse.ok(message=f"Sync started, running every {period_key} minutes")

    def stop_sync(self) -> ApiResponse:
        """Cancel the timer or a start still logging in; an in-flight cycle
        runs to completion"""
        with self._state_lock:
            starting = self._pending_start is not None
            self._generation += 1
            self._pending_start = None

            if not self._cancel_schedule() and not starting:
                self.is_running()
                response = ApiResponse.failure(NoOpError('No active sync to stop'))
                response.message = response.error
                return response

            try:
                self.store.update_sync_status(False)
            except OSError as e:
                logger.error(f"Could not persist stopped state: {e}")

            self._emit(SyncResult(api=STEP_SYSTEM, success=True, message='Sync stopped'))
            self._result_sink = None
            logger.info("Sync stopped")
            return ApiResponse.ok(message='Sync stopped')

    def is_running(self) -> bool:
        """Real timer state (a start still logging in counts as running);
        the persisted flag is corrected to match it"""
        with self._state_lock:
            running = ((self._schedule is not None and self._schedule.active)
                       or self._pending_start is not None)
            try:
                persisted = self.store.get_config().is_running
                if persisted != running:
                    logger.info(f"Correcting persisted sync state ({persisted} -> {running})")
                    self.store.update_sync_status(running)
            except OSError as e:
                logger.error(f"Could not correct persisted sync state: {e}")
            return running

    @api_operation('Resume Sync')
    def initialize_from_store(self, result_sink: Optional[ResultSink] = None) -> ApiResponse:
        """Resume a sync that was running when the process last exited"""
        config = self.store.get_config()
        if not config.is_running:
            logger.info("Sync was not running at last shutdown")
            return ApiResponse.ok(message='Nothing to resume')

        auth = self.store.get_auth_info()
        if not auth.has_credentials():
            logger.warning("Credentials are missing, sync cannot be resumed")
            self.store.update_sync_status(False)
            raise ConfigError('Credentials are missing; sync not resumed')

        logger.info(f"Resuming sync every {config.sync_period} minutes")
        return self.start_sync(config.sync_period,
                               {'username': auth.username, 'password': auth.password},
                               result_sink)

    def shutdown(self):
        """Stop the timer at process exit, keeping the persisted flag so the
        next start-up resumes"""
        with self._state_lock:
            self._generation += 1
            self._pending_start = None
            if self._cancel_schedule():
                logger.info("Sync timer cancelled for shutdown")

    def run_once(self) -> ApiResponse:
        """Run a single cycle outside the schedule"""
        results = self._run_cycle()
        if results is None:
            return ApiResponse.failure(SyncError('A sync cycle is already running'))
        return ApiResponse(all(r.success for r in results), data=results)

    def sync_all_logs(self) -> ApiResponse:
        return self.api.get_device_logs_all()

    # Settings

    def get_config(self) -> Dict[str, Any]:
        config = self.store.get_config().to_public_dict()
        config['is_running'] = self.is_running()
        return config

    def get_saved_credentials(self) -> Dict[str, Any]:
        auth = self.store.get_auth_info()
        return {
            'username': auth.username,
            'password': auth.password,
            'has_credentials': auth.has_credentials(),
            'last_login': auth.last_login,
        }

    @api_operation('Save Credentials')
    def save_credentials(self, username: str, password: str) -> ApiResponse:
        if not username or not password:
            raise ConfigError('Username and password are required')
        self.store.save_credentials(username, password)
        return ApiResponse.ok(message='Credentials saved successfully')

    @api_operation('Save Server URL')
    def save_server_url(self, url: str) -> ApiResponse:
        if not validate_server_url(url):
            raise ConfigError('Server URL must start with http:// or https://')
        saved = self.store.save_server_url(url)
        return ApiResponse.ok(data={'url': saved}, message='Server URL updated successfully')

    @api_operation('Save Sync Period')
    def save_sync_period(self, period: Any) -> ApiResponse:
        if not SyncPeriod.is_valid(period):
            raise ConfigError(f"Sync period must be one of {', '.join(p.value for p in SyncPeriod)}")
        self.store.save_sync_period(str(period))
        return ApiResponse.ok(data={'sync_period': str(period)}, message='Sync period saved')

    @api_operation('Save External API')
    def save_external_api(self, url: str, key: str) -> ApiResponse:
        if not validate_server_url(url):
            raise ConfigError('Downstream URL must start with http:// or https://')
        if not key:
            raise ConfigError('Downstream API key is required')
        self.store.save_external_api(url.strip(), key)
        return ApiResponse.ok(message='Downstream API settings saved')

    # Devices

    def get_devices(self) -> ApiResponse:
        """Fetch terminals from the vendor API and merge with stored devices"""
        return self.api.get_devices()

    def get_stored_devices(self) -> List[Device]:
        return self.store.get_devices()

    @api_operation('Update Company Id')
    def update_device_company_id(self, device_id: Any, company_id: Any) -> ApiResponse:
        if device_id is None or str(device_id).strip() == '':
            raise ConfigError('Device ID is required')
        self.store.update_device_company_id(device_id, company_id)
        return ApiResponse.ok(
            data={'device_id': str(device_id).strip(), 'company_id': company_id},
            message=f"Company ID updated for device {device_id}")
