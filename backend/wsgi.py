from relayum import create_app

app = create_app()
