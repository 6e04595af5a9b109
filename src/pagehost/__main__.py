from pagehost.api.app import run

run()
