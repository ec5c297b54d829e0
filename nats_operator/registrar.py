import asyncio
import logging

import httpx

from easykube import ApiError

from .config import settings
from .errors import ConnectivityError, NameConflictError, RegistrationError

logger = logging.getLogger(__name__)


CRD_API_VERSION = "apiextensions.k8s.io/v1"


def crd_established(crd):
    """
    Returns True if the CRD reports that it is established, False otherwise.

    Raises NameConflictError if Kubernetes has refused the names of the CRD.
    """
    conditions = crd.get("status", {}).get("conditions", [])
    for condition in conditions:
        if condition["type"] == "NamesAccepted" and condition["status"] == "False":
            raise NameConflictError(
                crd["metadata"]["name"],
                condition.get("reason") or condition.get("message") or "names not accepted"
            )
    return any(
        condition["type"] == "Established" and condition["status"] == "True"
        for condition in conditions
    )


class CRDRegistrar:
    """
    Ensures that custom resource definitions exist and are ready to use.
    """
    def __init__(self, ekclient, *, poll_interval = None, timeout = None):
        self.ekclient = ekclient
        self.poll_interval = poll_interval or settings.crd_poll_interval
        self.timeout = timeout or settings.crd_ready_timeout

    async def check_connectivity(self):
        """
        Checks that the Kubernetes API can be reached and returns the server version.
        """
        try:
            response = await self.ekclient.get("/version")
            response.raise_for_status()
        except (ApiError, httpx.HTTPError) as exc:
            raise ConnectivityError(f"unable to reach the Kubernetes API: {exc}") from exc
        version = response.json().get("gitVersion", "unknown")
        logger.info("running on Kubernetes %s", version)
        return version

    async def register(self, crd):
        """
        Creates the CRD if it does not exist and waits for it to become established.

        Returns True if the CRD is established, or False if the wait timed out, in
        which case the operator carries on without it.
        """
        name = crd["metadata"]["name"]
        ekcrds = await self.ekclient.api(CRD_API_VERSION).resource("customresourcedefinitions")
        try:
            await ekcrds.create(crd)
        except ApiError as exc:
            if exc.status_code != 409:
                raise RegistrationError(f"unable to create CRD {name}: {exc}") from exc
            logger.info("CRD %s already exists", name)
        except httpx.HTTPError as exc:
            raise RegistrationError(f"unable to create CRD {name}: {exc}") from exc
        else:
            logger.info("created CRD %s", name)
        try:
            await asyncio.wait_for(self._wait_established(ekcrds, name), self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "gave up waiting for CRD %s to be established after %ss",
                name,
                self.timeout
            )
            return False
        logger.info("CRD %s is established", name)
        return True

    async def _wait_established(self, ekcrds, name):
        while True:
            try:
                crd = await ekcrds.fetch(name)
            except ApiError as exc:
                if exc.status_code != 404:
                    logger.warning("error checking CRD %s: %s", name, exc)
            except httpx.HTTPError as exc:
                logger.warning("error checking CRD %s: %s", name, exc)
            else:
                if crd_established(crd):
                    return
            await asyncio.sleep(self.poll_interval)
