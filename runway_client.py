"""
Runway ML API client (image to video).

Documentation: https://docs.runwayml.com/

When RUNWAY_API_KEY is not set, or Runway rejects our credentials, jobs are
simulated. Simulated job IDs carry their creation time, so the app process and
the worker process agree on a job's state without sharing memory.
"""

import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import requests

import config

RUNWAY_API_URL = 'https://api.runwayml.com/v1'
RUNWAY_API_VERSION = '2024-11-06'
REQUEST_TIMEOUT = 30

SIMULATION_PREFIX = 'sim_'
SIMULATED_RUNNING_AFTER = 2        # seconds
SIMULATED_COMPLETION_TIME = 10     # seconds

# Demo videos for simulation mode
DEMO_VIDEOS = [
    'https://storage.googleapis.com/gtv-videos-bucket/sample/ForBiggerBlazes.mp4',
    'https://storage.googleapis.com/gtv-videos-bucket/sample/BigBuckBunny.mp4',
    'https://res.cloudinary.com/demo/video/upload/dog.mp4',
]

# Responses that mean "this account can't run jobs": fall back to simulation
FALLBACK_STATUS_CODES = (400, 401, 403)

TERMINAL_STATUSES = ('SUCCEEDED', 'FAILED')


class RunwayError(Exception):
    pass


@dataclass
class RunwayJob:
    id: str
    status: str
    created_at: str = ''
    estimated_time_to_complete: Optional[int] = None
    output: List[str] = field(default_factory=list)
    failure: Optional[str] = None
    failure_code: Optional[str] = None

    @classmethod
    def from_api(cls, data):
        return cls(
            id=data.get('id'),
            status=data.get('status', 'PENDING'),
            created_at=data.get('createdAt', ''),
            estimated_time_to_complete=data.get('estimatedTimeToComplete'),
            output=list(data.get('output') or []),
            failure=data.get('failure'),
            failure_code=data.get('failureCode'),
        )

    @property
    def video_url(self):
        return self.output[0] if self.output else None

    @property
    def is_finished(self):
        return self.status in TERMINAL_STATUSES


def is_simulated_job(task_id):
    return bool(task_id) and task_id.startswith(SIMULATION_PREFIX)


class SimulatedRunwayClient:
    """Stands in for Runway in development. Jobs finish SIMULATED_COMPLETION_TIME seconds after creation."""

    simulation_mode = True

    def create_image_to_video_job(self, prompt_image, model=None, duration=None, watermark=False, seed=None):
        created_ms = int(time.time() * 1000)
        suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
        job_id = f"{SIMULATION_PREFIX}{created_ms}_{suffix}"
        print(f"[Runway Simulation] Created job {job_id} - will complete in {SIMULATED_COMPLETION_TIME}s")
        return RunwayJob(
            id=job_id,
            status='PENDING',
            created_at=_iso_from_ms(created_ms),
            estimated_time_to_complete=SIMULATED_COMPLETION_TIME,
        )

    def get_job_status(self, task_id, now=None):
        created_ms = _created_ms_from_sim_id(task_id)
        if created_ms is None:
            raise RunwayError(f"Job {task_id} not found")

        now = time.time() if now is None else now
        elapsed = now - created_ms / 1000.0
        remaining = SIMULATED_COMPLETION_TIME - elapsed

        if remaining <= 0:
            # Pick the demo video from the ID so repeated polls return the same URL
            demo_video = DEMO_VIDEOS[sum(task_id.encode('utf-8')) % len(DEMO_VIDEOS)]
            return RunwayJob(id=task_id, status='SUCCEEDED', created_at=_iso_from_ms(created_ms),
                             estimated_time_to_complete=0, output=[demo_video])
        status = 'RUNNING' if elapsed > SIMULATED_RUNNING_AFTER else 'PENDING'
        return RunwayJob(id=task_id, status=status, created_at=_iso_from_ms(created_ms),
                         estimated_time_to_complete=max(0, round(remaining)))

    def cancel_job(self, task_id):
        print(f"[Runway Simulation] Cancelled job {task_id}")


class RunwayClient:
    simulation_mode = False

    def __init__(self, api_key, session=None):
        self.api_key = api_key
        self.session = session or requests.Session()
        self._simulator = SimulatedRunwayClient()

    def _headers(self, json_body=False):
        headers = {
            'Authorization': f"Bearer {self.api_key}",
            'X-Runway-Version': RUNWAY_API_VERSION,
        }
        if json_body:
            headers['Content-Type'] = 'application/json'
        return headers

    def create_image_to_video_job(self, prompt_image, model=None, duration=None, watermark=False, seed=None):
        payload = {
            'promptImage': prompt_image,
            'model': model or config.RUNWAY_MODEL,
            'duration': duration or config.RUNWAY_DURATION,
            'watermark': watermark,
        }
        if seed is not None:
            payload['seed'] = seed

        try:
            response = self.session.post(f"{RUNWAY_API_URL}/image_to_video", json=payload,
                                         headers=self._headers(json_body=True), timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            print(f"[Runway] API call failed: {e}")
            print("[Runway] Falling back to simulation mode due to error")
            self.simulation_mode = True
            return self._simulator.create_image_to_video_job(prompt_image)

        if not response.ok:
            error_message = _error_message(response)
            print(f"[Runway] API error response: status={response.status_code} error={error_message}")
            if response.status_code in FALLBACK_STATUS_CODES:
                print("[Runway] Falling back to simulation mode")
                self.simulation_mode = True
                return self._simulator.create_image_to_video_job(prompt_image)
            raise RunwayError(f"Runway API error: {error_message}")

        return RunwayJob.from_api(response.json())

    def get_job_status(self, task_id):
        if is_simulated_job(task_id):
            return self._simulator.get_job_status(task_id)

        response = self.session.get(f"{RUNWAY_API_URL}/tasks/{task_id}", headers=self._headers(),
                                    timeout=REQUEST_TIMEOUT)
        if not response.ok:
            raise RunwayError(f"Runway API error: {_error_message(response)}")
        return RunwayJob.from_api(response.json())

    def cancel_job(self, task_id):
        if is_simulated_job(task_id):
            return self._simulator.cancel_job(task_id)

        try:
            response = self.session.post(f"{RUNWAY_API_URL}/tasks/{task_id}/cancel", headers=self._headers(),
                                         timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            raise RunwayError(f"Runway cancel failed: {e}") from e
        if not response.ok:
            raise RunwayError(f"Runway API error: {_error_message(response)}")


def get_runway_client():
    """Real client when RUNWAY_API_KEY is configured, otherwise the simulator."""
    if not config.RUNWAY_API_KEY:
        print("[Runway] No API key found - using simulation mode")
        return SimulatedRunwayClient()
    return RunwayClient(config.RUNWAY_API_KEY)


def _error_message(response):
    try:
        data = response.json()
    except ValueError:
        return response.reason or response.text
    if isinstance(data, dict):
        return data.get('message') or data.get('error') or response.reason
    return response.reason


def _created_ms_from_sim_id(task_id):
    if not is_simulated_job(task_id):
        return None
    try:
        return int(task_id[len(SIMULATION_PREFIX):].split('_', 1)[0])
    except ValueError:
        return None


def _iso_from_ms(ms):
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).isoformat()
