import os
import threading

import pytest

from trustbroker import RequestError, RequestStatus, TrustBrokerClient, TrustBrokerConfig

TB_INTEGRATION = os.getenv("TB_INTEGRATION") == "1"
TB_PROVIDER_ID = os.getenv("TB_PROVIDER_ID", "")
TB_SCHEMA_ID = os.getenv("TB_SCHEMA_ID", "")
TB_OWNER_EXTERNAL_ID = os.getenv("TB_OWNER_EXTERNAL_ID", "")


def _client() -> TrustBrokerClient:
    return TrustBrokerClient.from_config(TrustBrokerConfig.from_env())


@pytest.mark.skipif(not TB_INTEGRATION, reason="set TB_INTEGRATION=1")
def test_integration_institution_is_reachable_with_signed_identity():
    with _client() as client:
        me = client.get_my_institution()
        assert me


@pytest.mark.skipif(not TB_INTEGRATION or not TB_PROVIDER_ID, reason="set TB_INTEGRATION=1 and TB_PROVIDER_ID")
def test_integration_create_request_and_cancel_polling():
    with _client() as client:
        created = client.create_data_request(
            provider_id=TB_PROVIDER_ID,
            schema_id=TB_SCHEMA_ID,
            owner_external_id=TB_OWNER_EXTERNAL_ID,
            expires_in=300,
        )
        assert created["status"] in RequestStatus.IN_FLIGHT

        cancel = threading.Event()
        timer = threading.Timer(2.0, cancel.set)
        timer.start()
        try:
            client.poll_for_consent(created["requestId"], cancel_event=cancel, interval_ms=500)
        except RequestError as exc:
            assert exc.status in ("ABORTED", "DENIED", "EXPIRED", "FAILED")
        finally:
            timer.cancel()
