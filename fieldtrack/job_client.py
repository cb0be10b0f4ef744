from typing import Optional
import asyncio

import httpx

from fieldtrack.errors import ApiUnavailableError, ExternalServiceError


class JobServiceClient:
    """REST client for the dispatch job service.

    The job service is the single source of truth for job status: every
    mutating call returns the updated job record, or raises
    ``ExternalServiceError`` with the server's message.
    """

    def __init__(self, base_url: str, logger, *, token: str | None = None, timeout_sec: float = 10.0) -> None:
        self.base_url = str(base_url or "").rstrip("/")
        self.logger = logger
        self.token = token
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=timeout_sec, write=timeout_sec, pool=5.0),
            headers={"User-Agent": "fieldtrack/1.0"},
            follow_redirects=True,
        )
        self.network_backoff = [0.3, 0.8, 1.8]
        self.status_backoff = [0.3, 0.8]

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(self, method: str, path: str, json_data: Optional[dict] = None) -> dict:
        if not self.base_url:
            raise RuntimeError("JOB_API_BASE is not set.")
        url = f"{self.base_url}/{path.lstrip('/')}"

        network_backoff = self.network_backoff
        status_backoff = self.status_backoff
        network_errors = (
            httpx.ConnectTimeout,
            httpx.ReadTimeout,
            httpx.WriteTimeout,
            httpx.PoolTimeout,
            httpx.ConnectError,
            httpx.ReadError,
            httpx.RemoteProtocolError,
        )

        for attempt in range(1, len(network_backoff) + 2):
            self.logger.info("JOB_API_REQUEST attempt=%s method=%s path=%s", attempt, method, path)
            try:
                response = await self._client.request(method, url, json=json_data, headers=self._headers())
            except network_errors as exc:
                self.logger.warning(
                    "JOB_API_REQUEST_EXCEPTION attempt=%s method=%s path=%s error_type=%s error=%s",
                    attempt,
                    method,
                    path,
                    type(exc).__name__,
                    exc,
                )
                if attempt <= len(network_backoff):
                    await asyncio.sleep(network_backoff[attempt - 1])
                    continue
                raise ApiUnavailableError("Job service is unreachable.") from exc
            except httpx.HTTPError as exc:
                self.logger.warning("JOB_API_REQUEST_EXCEPTION method=%s path=%s error=%s", method, path, exc)
                raise ApiUnavailableError("Job service is unreachable.") from exc

            if response.status_code in {502, 503, 504}:
                if attempt <= len(status_backoff):
                    self.logger.warning(
                        "JOB_API_RETRY_STATUS attempt=%s method=%s path=%s status=%s",
                        attempt,
                        method,
                        path,
                        response.status_code,
                    )
                    await asyncio.sleep(status_backoff[attempt - 1])
                    continue
                raise ApiUnavailableError(
                    f"Job service is unavailable (status {response.status_code}).",
                    status=response.status_code,
                )

            try:
                payload = response.json()
            except ValueError:
                payload = None

            if response.status_code >= 400:
                message = payload.get("error") if isinstance(payload, dict) else None
                self.logger.warning(
                    "JOB_API_NON_2XX method=%s path=%s status=%s body=%s",
                    method,
                    path,
                    response.status_code,
                    response.text[:300],
                )
                raise ExternalServiceError(
                    str(message or f"Job service rejected the request (status {response.status_code})."),
                    status=response.status_code,
                )

            if not isinstance(payload, dict):
                self.logger.error("JOB_API_BAD_JSON method=%s path=%s", method, path)
                raise ExternalServiceError("Invalid response from the job service.", status=response.status_code)
            return payload

        raise ApiUnavailableError("Job service is unreachable.")

    @staticmethod
    def _job(payload: dict) -> dict:
        job = payload.get("job")
        if not isinstance(job, dict):
            raise ExternalServiceError("Job service response has no job record.")
        return job

    async def login(self, email: str, password: str) -> dict:
        payload = await self._request("POST", "technician/login", {"email": email, "password": password})
        technician = payload.get("technician")
        if not payload.get("success") or not payload.get("token") or not isinstance(technician, dict):
            raise ExternalServiceError("Invalid server response.")
        self.token = str(payload["token"])
        self.logger.info("JOB_API_LOGIN_OK tech_id=%s", technician.get("id"))
        return technician

    async def get_my_jobs(self, tech_id: str) -> list[dict]:
        payload = await self._request("GET", f"technician/{tech_id}/jobs")
        jobs = payload.get("jobs")
        if not isinstance(jobs, list):
            return []
        return [job for job in jobs if isinstance(job, dict)]

    async def accept_job(self, job_id: str) -> dict:
        return self._job(await self._request("PUT", f"jobs/{job_id}/accept"))

    async def start_job(self, job_id: str, tech_id: str) -> dict:
        return self._job(await self._request("PUT", f"jobs/{job_id}/start", {"techId": tech_id}))

    async def complete_job(self, job_id: str, tech_id: str) -> dict:
        return self._job(await self._request("PUT", f"jobs/{job_id}/complete", {"techId": tech_id}))

    @staticmethod
    def _technician(payload: dict) -> dict:
        technician = payload.get("technician")
        if not isinstance(technician, dict):
            raise ExternalServiceError("Job service response has no technician record.")
        return technician

    async def register(self, name: str, email: str, password: str) -> dict:
        payload = await self._request(
            "POST",
            "technician/register",
            {"name": name, "email": email, "password": password},
        )
        technician = payload.get("technician")
        if not payload.get("success") or not payload.get("token") or not isinstance(technician, dict):
            raise ExternalServiceError("Invalid server response.")
        self.token = str(payload["token"])
        self.logger.info("JOB_API_REGISTER_OK tech_id=%s", technician.get("id"))
        return technician

    async def get_profile(self, tech_id: str) -> dict:
        return self._technician(await self._request("GET", f"technician/{tech_id}"))

    async def toggle_availability(self, tech_id: str, is_available: bool) -> dict:
        payload = await self._request("PUT", f"technician/{tech_id}/toggle-tracking", {"isTracking": bool(is_available)})
        return self._technician(payload)
