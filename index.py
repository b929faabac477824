from aws_lambda_powertools.utilities.typing import LambdaContext

from imgedge.originrequest import index as originrequest
from imgedge.typing import OriginRequestEvent, ResponseResult


def origin_request_lambda_handler(
    event: OriginRequestEvent,
    context: LambdaContext,
) -> ResponseResult:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = originrequest.lambda_main(event, context.get_remaining_time_in_millis())

  # # For debugging
  # print('return:')
  # print(json.dumps(ret))

  return ret
