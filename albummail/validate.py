"""
Connectivity and configuration validation for the album mailer.
Tests the photo server, the album lookup, SMTP authentication and the state directory.
"""

import smtplib
import tempfile
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass

from .pipeline import ping, resolve_album, check_login, FetchError, AlbumNotFoundError

from .config import MainConfig

@dataclass
class ValidationResult:
    """Result of a validation check"""
    success: bool
    message: str
    details: Optional[Dict[str,Any]]=None
    error: Optional[str]=None

class ConfigValidator:
    """Checks that every external collaborator is reachable with the given configuration"""

    def __init__(self, config: MainConfig):
        self.config = config
        self.pipeline_config = config.get_pipeline_configs()

    def _validate_immich(self) -> ValidationResult:
        print("Validating Immich server connectivity...")
        immich = self.pipeline_config["immich"]
        try:
            if not ping(immich):
                return ValidationResult(
                    success=False,
                    message="Immich: Unexpected ping response",
                    error="server did not answer 'pong'"
                )
            return ValidationResult(
                success=True,
                message=f"Immich: {immich.base_url} reachable",
                details={"base_url": immich.base_url}
            )
        except FetchError as e:
            return ValidationResult(
                success=False,
                message="Immich: Not reachable",
                error=str(e)
            )

    def _validate_album(self) -> ValidationResult:
        print("Validating album lookup...")
        immich = self.pipeline_config["immich"]
        try:
            album_id = resolve_album(immich.album_name, immich)
            return ValidationResult(
                success=True,
                message=f"Album: '{immich.album_name}' found",
                details={"album_id": album_id}
            )
        except AlbumNotFoundError as e:
            return ValidationResult(
                success=False,
                message="Album: Not found",
                error=str(e)
            )
        except FetchError as e:
            return ValidationResult(
                success=False,
                message="Album: Lookup failed",
                error=str(e)
            )

    def _validate_smtp(self) -> ValidationResult:
        print("Validating SMTP connection and authentication...")
        deliver = self.pipeline_config["deliver"]
        try:
            check_login(deliver)
            return ValidationResult(
                success=True,
                message=f"SMTP: {deliver.smtp_server}:{deliver.port} login ok",
                details={"sender": deliver.sender, "recipients": [r.address for r in deliver.recipients]}
            )
        except smtplib.SMTPAuthenticationError as e:
            return ValidationResult(
                success=False,
                message="SMTP: Authentication failed",
                error=str(e)
            )
        except (smtplib.SMTPException, OSError) as e:
            return ValidationResult(
                success=False,
                message="SMTP: Connection failed",
                error=str(e)
            )

    def _validate_state_dir(self) -> ValidationResult:
        print("Validating state directory...")
        state_dir = Path(self.pipeline_config["state"].dir).expanduser()
        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryFile(dir=state_dir):
                pass
            return ValidationResult(
                success=True,
                message=f"State: {state_dir} writable"
            )
        except OSError as e:
            return ValidationResult(
                success=False,
                message="State: Directory not writable",
                error=str(e)
            )

    def validate_all(self) -> Dict[str, ValidationResult]:
        results = {"immich": self._validate_immich()}
        if results["immich"].success:
            results["album"] = self._validate_album()
        results["smtp"] = self._validate_smtp()
        results["state"] = self._validate_state_dir()
        return results
