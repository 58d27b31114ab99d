import logging

import uvicorn

from pinproxy.config import ConfigLoader, resolve_bind_address


def main():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    # Load config early to get host/port; HOST and PORT env vars take precedence
    settings = ConfigLoader().load_config()
    host, port = resolve_bind_address(settings)

    print(f"pinproxy running at http://{host}:{port}")
    print(f"Config UI: http://{host}:{port}/")
    print(f"OpenAI-compatible base URL: http://{host}:{port}/v1")
    uvicorn.run("pinproxy.app:app", host=host, port=port, reload=False)

if __name__ == "__main__":
    main()
