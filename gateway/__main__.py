import uvicorn

from gateway.vars import HOST, PORT


def main():
    uvicorn.run("gateway.server:app", host=HOST, port=PORT, proxy_headers=False)


if __name__ == "__main__":
    main()
