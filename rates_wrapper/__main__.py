import logging

import trio
from hypercorn.config import Config
from hypercorn.trio import serve

from rates_wrapper.app import app
from rates_wrapper.config import settings


async def main():
    config = Config()
    config.bind = [f'{settings.host}:{settings.port}']

    await serve(app, config)


if __name__ == '__main__':
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    trio.run(main)
