"""Tests for phone-home key registration."""

import pytest

from backend.models.device import PeerStatus
from backend.services import device_service
from backend.services.device_service import register_public_key
from tests.conftest import wg_key


class TestRegisterPublicKey:
    """Reported tunnel address handling on phone-home."""

    def test_free_reported_address_is_accepted(self, db, make_device):
        device = make_device("office")

        register_public_key(db, device, wg_key(5), tunnel_address="10.100.0.9/32")

        assert device.tunnel_address == "10.100.0.9"
        assert device.tunnel_allowed_ips == "10.100.0.9/32"
        assert device.tunnel_public_key == wg_key(5)
        assert device.peer_status == PeerStatus.PENDING

    def test_address_outside_subnet_is_replaced(self, db, make_device):
        device = make_device("office")

        register_public_key(db, device, wg_key(5), tunnel_address="192.168.88.1")

        assert device.tunnel_address == "10.100.0.2"

    def test_address_taken_after_check_falls_back_to_allocation(self, db, make_device, monkeypatch):
        holder = make_device("holder", tunnel_address="10.100.0.9")
        device = make_device("office")
        # Проверка не видит владельца, как если бы его запись появилась сразу после неё
        monkeypatch.setattr(device_service, "_address_is_free", lambda session, address, dev: True)

        register_public_key(db, device, wg_key(5), tunnel_address="10.100.0.9")

        assert device.tunnel_address == "10.100.0.2"
        assert device.tunnel_public_key == wg_key(5)
        db.refresh(holder)
        assert holder.tunnel_address == "10.100.0.9"

    def test_invalid_key_is_rejected(self, db, make_device):
        device = make_device("office")

        with pytest.raises(ValueError):
            register_public_key(db, device, "not-a-key")

        assert device.tunnel_address is None
