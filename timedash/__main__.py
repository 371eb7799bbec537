from timedash.api.main import run

run()
