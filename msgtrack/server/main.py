import asyncio

import typer
from grpc import aio

from .push import PushGatewayService, add_push_gateway_to_server, logger

app = typer.Typer(help="Development push gateway for msgtrack clients")


async def serve(host="127.0.0.1", port=50052):
    """Start the development push gateway.

    Clients reach it by setting MSGTRACK_PUSH_TARGET=<host>:<port>.

    Args:
        host (str): Hostname to bind server to. Defaults to localhost.
        port (int): Port number to listen on. Defaults to 50052.

    Side Effects:
        - Starts gRPC server
        - Logs every received notification
    """
    server = aio.server()
    add_push_gateway_to_server(PushGatewayService(), server)
    listen_addr = f"{host}:{port}"
    server.add_insecure_port(listen_addr)
    logger.info(f"Push gateway starting, listening on {listen_addr}")
    await server.start()
    logger.info(f"Push gateway is now running on {listen_addr}")
    await server.wait_for_termination()


@app.command()
def run(host: str = "127.0.0.1", port: int = 50052):
    """Run the push gateway until interrupted."""
    asyncio.run(serve(host, port))


if __name__ == "__main__":
    app()
