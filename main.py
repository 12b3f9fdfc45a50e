from fleetpanel import create_app

app = create_app()


if __name__ == '__main__':
    if app.config['CONTROL_LOOPS_ENABLED']:
        app.extensions['fleetpanel'].start(app)
    try:
        app.run(host='0.0.0.0', port=app.config['FLASK_PORT'])
    finally:
        app.extensions['fleetpanel'].stop()
