"""Jenkins refresh: caches the job tree and the user's recent builds locally."""

import logging
from typing import Any, Dict, List, Optional, Set

import httpx

from opsync.errors import RemoteUnavailableError

logger = logging.getLogger(__name__)

JOBS_TABLE = "jenkins_jobs"
BUILDS_TABLE = "jenkins_builds"

MAX_DEPTH = 10
JOBS_TREE = (
    "jobs[name,url,color,fullName,_class,"
    "lastBuild[number,url,result,timestamp,building,actions[causes[userId,userName]]]]"
)
BUILDS_TREE = (
    "jobs[name,url,_class,builds[number,url,result,timestamp,duration,building,"
    "fullDisplayName,id,actions[causes[userId,userName]]]{0,20}]"
)

_FOLDER_CLASSES = ("Folder", "WorkflowMultiBranchProject", "OrganizationFolder")


def _is_folder(class_name: Optional[str]) -> bool:
    return bool(class_name) and any(c in class_name for c in _FOLDER_CLASSES)


def _status_of(build: Optional[Dict[str, Any]]) -> str:
    if not build:
        return "Unknown"
    if build.get("building"):
        return "Building"
    return build.get("result") or "Unknown"


def _started_by(build: Dict[str, Any], user: str) -> bool:
    for action in build.get("actions") or []:
        for cause in (action or {}).get("causes") or []:
            if cause.get("userId") == user or cause.get("userName") == user:
                return True
    return False


class JenkinsRefreshModule:
    """Global sync module fetching Jenkins state over its JSON API.

    Skipped when the server URL, user or API token is missing. Folders are
    walked up to MAX_DEPTH levels deep.
    """

    name = "jenkins"

    def __init__(
        self,
        log,
        base_url: Optional[str],
        user: Optional[str],
        token: Optional[str],
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.log = log
        self.base_url = base_url.rstrip("/") if base_url else None
        self.user = user
        self.token = token
        self.timeout = timeout
        self._client = client

    def enabled(self) -> bool:
        return bool(self.base_url and self.user and self.token)

    def _fetch(
        self, client: httpx.Client, url: str, tree: str, required: bool = False
    ) -> Optional[Dict[str, Any]]:
        """GET the JSON API at ``url``.

        A failing folder is logged and treated as empty. With ``required`` set
        (the server root) a non-200 raises RemoteUnavailableError instead, so
        the cached tree is left as it was.
        """
        response = client.get(
            f"{url.rstrip('/')}/api/json",
            params={"tree": tree},
            auth=(self.user, self.token),
            timeout=self.timeout,
        )
        if response.status_code != 200:
            message = f"Jenkins API {url} returned HTTP {response.status_code}"
            if required:
                raise RemoteUnavailableError(message)
            logger.warning(message)
            return None
        return response.json()

    def fetch_all_jobs(self, client: httpx.Client) -> List[Dict[str, Any]]:
        jobs: List[Dict[str, Any]] = []

        def traverse(url: str, depth: int):
            if depth >= MAX_DEPTH:
                logger.warning(f"Max depth {MAX_DEPTH} reached at {url}, not descending")
                return
            data = self._fetch(client, url, JOBS_TREE, required=depth == 0)
            for job in (data or {}).get("jobs") or []:
                if _is_folder(job.get("_class")):
                    traverse(job["url"], depth + 1)
                    continue
                last = job.get("lastBuild") or {}
                jobs.append(
                    {
                        "name": job.get("name"),
                        "fullName": job.get("fullName") or job.get("name"),
                        "url": job.get("url"),
                        "color": job.get("color"),
                        "lastStatus": _status_of(last),
                        "lastBuildNumber": last.get("number"),
                    }
                )

        traverse(self.base_url, 0)
        return jobs

    def fetch_my_builds(self, client: httpx.Client) -> List[Dict[str, Any]]:
        builds: List[Dict[str, Any]] = []
        seen: Set[str] = set()

        def traverse(url: str, depth: int):
            normalized = url.rstrip("/")
            if depth >= MAX_DEPTH or normalized in seen:
                return
            seen.add(normalized)
            data = self._fetch(client, url, BUILDS_TREE, required=depth == 0)
            for job in (data or {}).get("jobs") or []:
                if _is_folder(job.get("_class")):
                    traverse(job["url"], depth + 1)
                    continue
                for build in job.get("builds") or []:
                    if not _started_by(build, self.user):
                        continue
                    builds.append(
                        {
                            "id": build.get("id"),
                            "number": build.get("number"),
                            "jobName": job.get("name"),
                            "url": build.get("url"),
                            "status": _status_of(build),
                            "timestamp": build.get("timestamp"),
                            "duration": build.get("duration"),
                        }
                    )

        traverse(self.base_url, 0)
        builds.sort(key=lambda b: b.get("timestamp") or 0, reverse=True)
        return builds

    def run(self) -> None:
        client = self._client or httpx.Client(timeout=self.timeout)
        try:
            jobs = self.fetch_all_jobs(client)
            builds = self.fetch_my_builds(client)
        finally:
            if self._client is None:
                client.close()
        self.log.put_entity(JOBS_TABLE, self.base_url, jobs)
        self.log.put_entity(BUILDS_TABLE, self.base_url, builds)
        logger.info(f"Jenkins refresh: {len(jobs)} jobs, {len(builds)} of my builds")
