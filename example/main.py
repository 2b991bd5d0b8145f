import asyncio

from prediction_client.errors import PredictionFailedError
from prediction_client.models import ClientConfig, RetryConfig, WaitConfig
from prediction_client.prediction_client import PredictionClient
from prediction_server import PredictionServer


async def progress(prediction):
    print(f"Prediction {prediction.id} is {prediction.status.value}")


async def main():
    PORT = 8000
    server = PredictionServer(
        steps=["starting", "processing", "processing", "succeeded"],
        output=["an", "astronaut", "riding", "a", "horse"],
        stream_chunks=[
            b"event: output\ndata: an astronaut\n\n",
            b"event: output\ndata:  riding a horse\n\n",
            b"event: done\ndata: {}\n\n",
        ],
    )
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    config = ClientConfig(
        base_url=f"http://localhost:{PORT}",
        retry=RetryConfig(max_retries=3, interval=0.25),
        wait=WaitConfig(interval=1.0),
    )

    async with PredictionClient(config) as client:
        try:
            output = await client.run(
                "owner/model:version", {"prompt": "an astronaut"}, progress=progress
            )
            print(f"Output: {output}")
        except PredictionFailedError as e:
            print(f"Prediction failed: {e.error}")
        except Exception as e:
            print(f"Error occurred: {e}")

        async for event in client.stream("owner/model", {"prompt": "an astronaut"}):
            print(f"{event.event}: {event.data}")

        async for page in client.paginate(client.list_predictions):
            print(f"Page with {len(page)} predictions")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
