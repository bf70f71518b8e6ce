from __future__ import annotations

import json
import signal
import threading

from trustbroker import RequestError, TrustBrokerClient, TrustBrokerConfig


def main() -> None:
    cancel = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: cancel.set())

    with TrustBrokerClient.from_config(TrustBrokerConfig.from_env()) as client:
        created = client.create_data_request(
            provider_id="provider-demo",
            schema_id="kyc-basic",
            data_owner_id="owner-demo",
            expires_in=600,
        )
        request_id = created["requestId"]
        try:
            approved = client.poll_for_consent(request_id, cancel_event=cancel)
        except RequestError as exc:
            print(json.dumps(exc.to_dict(), indent=2, sort_keys=True))
            return
        data = client.fetch_with_token(approved.provider_endpoint, approved.access_token)
        print(json.dumps({"request_id": request_id, "data": data.data}, indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
