from dataclasses import dataclass
from typing import Any, Literal

CredentialSource = Literal["google_application_credentials", "application_default_credentials"]
TokenSource = Literal["adc_authorized_user", "adc_service_account", "metadata_server", "gcloud_cli"]


@dataclass(frozen=True)
class AdcCredential:
    source: CredentialSource
    file_path: str
    # whatever the file parsed to; not always an object
    json: Any

    @property
    def type(self) -> str | None:
        if not isinstance(self.json, dict):
            return None
        return self.json.get("type")


@dataclass(frozen=True)
class TokenInfo:
    access_token: str
    expires_at: int  # epoch ms
    source: TokenSource
    quota_project_id: str | None = None
    principal: str | None = None
    credential_source: CredentialSource | None = None
    file_path: str | None = None
    default_project_id: str | None = None


@dataclass(frozen=True)
class ProjectCache:
    value: str
    source: Literal["gcloud_config"] = "gcloud_config"
