from aws_lambda_powertools.utilities.typing import LambdaContext

from imghandler.imagerequest import index as imagerequest
from imghandler.imagerequest.errors import ImageHandlerError
from imghandler.typing import ErrorResult, ImageRequestEvent, ImageRequestPayload


def image_request_lambda_handler(
    event: ImageRequestEvent,
    _: LambdaContext,
) -> ImageRequestPayload | ErrorResult:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  try:
    info = imagerequest.lambda_main(event)
  except ImageHandlerError as e:
    return imagerequest.error_result(e)

  return info.to_payload()
