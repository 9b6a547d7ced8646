import uvicorn

from scalar_proxy.vars import HOST, PORT


def main():
    uvicorn.run("scalar_proxy.server:app", host=HOST, port=PORT)


if __name__ == "__main__":
    main()
