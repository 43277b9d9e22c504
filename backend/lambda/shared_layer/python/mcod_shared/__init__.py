"""mcod_shared — Shared layer for the Minecraft-on-demand Lambda functions.

Provides:
    - Environment configuration and server lifecycle constants
    - Lazy boto3 client singletons (DynamoDB, EC2, ECS, SSM, S3)
    - DynamoDB serialization and structured observability logging
    - HTTP response helpers with CORS and bearer-token authentication
    - The server lifecycle core: workflow driver, readiness prober,
      lifecycle record store, provisioning and teardown orchestrators
"""

__version__ = "1.0.0"
