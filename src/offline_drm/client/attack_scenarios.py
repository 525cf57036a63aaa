"""
Attack scenarios for exercising the offline resource service.

Each scenario drives the service the way a hostile client would and records
whether the attack got through (`success`) together with details:
- Replay: reuse a consumed token
- Tampering: modify ciphertext and try to decrypt it
- Identity spoofing: present another owner's token
- Revocation bypass: use a token after the resource was revoked or deleted
"""

from typing import Any, Callable, Dict
from pathlib import Path

from ..encryption import cipher
from ..encryption.keys import KeyMaterial
from ..errors import OfflineDRMError


class AttackScenario:
    """Base class for attack scenarios."""

    def __init__(self, name: str, description: str):
        """Initialize an attack scenario.

        Args:
            name: Human-readable name of the attack
            description: Detailed description of what the attack attempts
        """
        self.name = name
        self.description = description
        self.success = False
        self.details = {}

    def execute(self, *args, **kwargs) -> bool:
        """Execute the attack scenario. Should be overridden by subclasses.

        Returns:
            True if attack succeeded, False otherwise
        """
        raise NotImplementedError

    def _attempt(self, label: str, fn: Callable[[], Any]) -> bool:
        try:
            result = fn()
            if hasattr(result, "read_all"):
                result.read_all()
            return True
        except OfflineDRMError as e:
            self.details[label] = e.code
            return False


class ReplayAttack(AttackScenario):
    """Attempt to use one access token more than once."""

    def __init__(self):
        super().__init__(
            "Replay Attack",
            "Attempt to reuse the same access token to download content "
            "or release a key multiple times"
        )

    def execute(self, delivery_fn: Callable[[str, str], Any], token: str, caller_id: str,
                num_attempts: int = 3) -> bool:
        """Execute replay attack by presenting the same token repeatedly.

        Args:
            delivery_fn: Delivery operation taking (token, caller_id)
            token: Token to replay
            caller_id: Identity of the legitimate owner
            num_attempts: Number of times to present the token

        Returns:
            True if more than one delivery succeeded
        """
        successful = 0
        for attempt in range(num_attempts):
            if self._attempt(f"attempt_{attempt}", lambda: delivery_fn(token, caller_id)):
                successful += 1

        self.success = successful > 1
        self.details["successful_attempts"] = successful
        self.details["total_attempts"] = num_attempts
        return self.success


class TamperingAttack(AttackScenario):
    """Attempt to tamper with downloaded ciphertext."""

    def __init__(self):
        super().__init__(
            "Tampering Attack",
            "Attempt to modify encrypted content on the device "
            "and verify if integrity checks catch the tampering"
        )

    def execute(self, encrypted_file: str, key_material: KeyMaterial,
                modification_fn: Callable[[bytes], bytes]) -> bool:
        """Execute tampering attack on a copy of an encrypted file.

        Args:
            encrypted_file: Path to the downloaded ciphertext
            key_material: Legitimate key for the resource
            modification_fn: Function returning modified ciphertext bytes

        Returns:
            True if the modified ciphertext still decrypted (tampering undetected)
        """
        if not Path(encrypted_file).exists():
            self.details["error"] = "Encrypted file not found"
            return False

        tampered = modification_fn(Path(encrypted_file).read_bytes())
        self.details["tampering_attempted"] = True
        try:
            cipher.decrypt_bytes(tampered, key_material)
        except cipher.CorruptCiphertext as e:
            self.success = False
            self.details["tampering_detected"] = True
            self.details["error_message"] = str(e)
            return False

        self.success = True
        self.details["tampering_detected"] = False
        return True


class IdentitySpoofingAttack(AttackScenario):
    """Attempt to use another owner's token."""

    def __init__(self):
        super().__init__(
            "Identity Spoofing Attack",
            "Attempt to use another user's access token from a different "
            "authenticated session to access protected content"
        )

    def execute(self, delivery_fn: Callable[[str, str], Any], stolen_token: str, fake_identity: str) -> bool:
        """Execute spoofing attack with a token issued to someone else.

        Args:
            delivery_fn: Delivery operation taking (token, caller_id)
            stolen_token: Token issued to the legitimate owner
            fake_identity: Identity of the attacker's session

        Returns:
            True if the delivery went through for the attacker
        """
        self.details["spoofed_identity"] = fake_identity
        self.success = self._attempt("denial", lambda: delivery_fn(stolen_token, fake_identity))
        self.details["delivery_passed"] = self.success
        return self.success


class RevocationBypassAttack(AttackScenario):
    """Attempt to use a token after its resource was revoked or deleted."""

    def __init__(self):
        super().__init__(
            "Revocation Bypass Attack",
            "Attempt to use a token issued before revocation or deletion "
            "to obtain content afterwards"
        )

    def execute(self, delivery_fn: Callable[[str, str], Any], token: str, caller_id: str,
                revoke_fn: Callable[[], Any]) -> bool:
        """Execute revocation bypass attack.

        Args:
            delivery_fn: Delivery operation taking (token, caller_id)
            token: Token issued before revocation
            caller_id: Identity of the owner
            revoke_fn: Callable that revokes or deletes the resource

        Returns:
            True if the token still worked after revocation
        """
        revoke_fn()
        self.success = self._attempt("denial", lambda: delivery_fn(token, caller_id))
        if self.success:
            self.details["revocation_bypassed"] = True
        else:
            self.details["revocation_properly_enforced"] = True
        return self.success


def simulate_attack_scenario(scenario: AttackScenario) -> Dict[str, Any]:
    """Simulate an attack scenario and return results.

    Args:
        scenario: AttackScenario instance to execute

    Returns:
        Dictionary with attack results and details
    """
    return {
        "scenario": scenario.name,
        "description": scenario.description,
        "success": scenario.success,
        "details": scenario.details
    }
