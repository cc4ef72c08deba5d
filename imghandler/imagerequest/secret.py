from logging import Logger

from mypy_boto3_secretsmanager.client import SecretsManagerClient


class SecretProvider:
  """Reads secret strings from Secrets Manager.

  The last secret read is kept for the lifetime of the process, so warm
  invocations signing with the same secret skip the network round trip.
  """

  def __init__(self, log: Logger, client: SecretsManagerClient):
    self.log = log
    self.client = client
    self.cache: dict[str, str] = {}

  def get_secret(self, secret_id: str) -> str:
    if secret_id in self.cache:
      return self.cache[secret_id]

    res = self.client.get_secret_value(SecretId=secret_id)
    secret = res['SecretString']
    self.cache = {secret_id: secret}
    self.log.debug({'message': 'secret loaded', 'secret_id': secret_id})
    return secret
