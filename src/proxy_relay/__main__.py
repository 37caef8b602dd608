from proxy_relay.cmd.cli import app

app()
