"""
Collaborators supplied by the host application.

The identity provider owns sign-in/sign-up/sign-out; this service only reads
the current principal. Device classification is platform-specific and is
handed in as a DeviceClassifier.
"""

from __future__ import annotations

from typing import Optional, Protocol

from .models import DeviceType, Principal


class IdentityProvider(Protocol):
    def current_principal(self) -> Optional[Principal]:
        ...


class DeviceClassifier(Protocol):
    def classify(self) -> DeviceType:
        ...

    def describe(self) -> str:
        ...


class StaticIdentityProvider:
    """Identity provider holding a principal set by the caller."""

    def __init__(self, principal: Optional[Principal] = None) -> None:
        self._principal = principal

    def current_principal(self) -> Optional[Principal]:
        return self._principal

    def sign_in(self, principal: Principal) -> None:
        self._principal = principal

    def sign_out(self) -> None:
        self._principal = None


class StaticDeviceClassifier:
    _DESCRIPTIONS = {
        DeviceType.PHONE: "Mobile Device",
        DeviceType.TABLET: "Tablet Device",
        DeviceType.WEB: "Web Browser",
        DeviceType.UNKNOWN: "Unknown Device",
    }

    def __init__(self, device_type: DeviceType = DeviceType.PHONE, info: Optional[str] = None) -> None:
        self._device_type = device_type
        self._info = info

    def classify(self) -> DeviceType:
        return self._device_type

    def describe(self) -> str:
        return self._info or self._DESCRIPTIONS[self._device_type]
