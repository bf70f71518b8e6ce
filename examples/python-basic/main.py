import logging
import os

from trustbroker import RequestError, TrustBrokerClient, TrustBrokerConfig

logging.basicConfig(level=logging.INFO)

client = TrustBrokerClient.from_config(TrustBrokerConfig.from_env())

try:
    result = client.request_data(
        provider_id=os.getenv("TB_PROVIDER_ID", "provider-demo"),
        schema_id=os.getenv("TB_SCHEMA_ID", "kyc-basic"),
        owner_external_id=os.getenv("TB_OWNER_EXTERNAL_ID", "customer-1"),
        on_status=lambda record: print("status:", record.status),
    )
    print("data keys:", sorted((result.data or {}).keys()))
except RequestError as exc:
    print("request ended:", exc.status, exc.failure_reason or exc.message)
finally:
    client.close()
