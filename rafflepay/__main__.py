import argparse
import os

import uvicorn


def main():
    parser = argparse.ArgumentParser(description="rafflepay server")
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int,
                        default=int(os.getenv("PORT", "8000")))
    args = parser.parse_args()

    # one worker: MockPay keeps its payments in process memory
    uvicorn.run("rafflepay.server:app", host=args.host, port=args.port,
                log_level=os.getenv("LOG_LEVEL", "info").lower())


if __name__ == "__main__":
    main()
