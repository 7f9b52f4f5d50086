"""Per-tenant credential directories and the tenant id registry file."""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import List

from .errors import InvalidTenantId
from .logger import get_logger

TENANT_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

logger = get_logger("Credentials")


def is_valid_tenant_id(tenant_id: str | None) -> bool:
    """Return ``True`` for ids made only of letters, digits, ``_`` and ``-``."""
    return bool(tenant_id) and bool(TENANT_ID_RE.match(tenant_id))


def ensure_valid_tenant_id(tenant_id: str | None) -> str:
    if not is_valid_tenant_id(tenant_id):
        raise InvalidTenantId(str(tenant_id))
    return tenant_id  # type: ignore[return-value]


class CredentialStore:
    """Locate and purge the opaque credential directory of each tenant.

    The directory content belongs to the transport provider; the gateway only
    decides where it lives and when it is wiped.
    """

    def __init__(self, base_dir: str | Path = ".", prefix: str = "auth_info"):
        self.base_dir = Path(base_dir).expanduser()
        self.prefix = prefix

    def path_for(self, tenant_id: str) -> Path:
        return self.base_dir / f"{self.prefix}_{tenant_id}"

    def exists(self, tenant_id: str) -> bool:
        return self.path_for(tenant_id).is_dir()

    def purge(self, tenant_id: str) -> bool:
        """Delete the credential directory; return ``True`` when something was removed."""
        path = self.path_for(tenant_id)
        if not path.exists():
            return False
        shutil.rmtree(path, ignore_errors=True)
        logger.info("[%s] Credentials removed (%s)", tenant_id, path)
        return not path.exists()


class TenantRegistryFile:
    """Newline-delimited list of tenant ids started at boot.

    Lines starting with ``#`` are comments, invalid ids are ignored and
    duplicates are collapsed while keeping the first occurrence.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    @staticmethod
    def parse(raw: str) -> List[str]:
        ids: List[str] = []
        seen = set()
        for line in raw.splitlines():
            value = line.strip()
            if not value or value.startswith("#"):
                continue
            if not is_valid_tenant_id(value):
                continue
            if value in seen:
                continue
            seen.add(value)
            ids.append(value)
        return ids

    def read(self) -> List[str]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            logger.warning("Cannot read tenant registry %s: %s", self.path, exc)
            return []
        return self.parse(raw)

    def ensure(self, tenant_id: str) -> bool:
        """Append ``tenant_id`` unless already listed; return ``True`` if added."""
        ensure_valid_tenant_id(tenant_id)
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text("", encoding="utf-8")
        current = self.read()
        if tenant_id in current:
            return False
        raw = self.path.read_text(encoding="utf-8")
        prefix = "" if not raw or raw.endswith("\n") else "\n"
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(f"{prefix}{tenant_id}\n")
        return True
