import threading

import pytest

from text_captcha_server import default_config, widget_config_from_env


def mount(client):
    response = client.post('/api/captcha')
    assert response.status_code == 201
    return response.get_json()


def solve_like_human(client, clock, widget_id, answer):
    client.post(f'/api/captcha/{widget_id}/pointer', json={'count': 12})
    for i in range(len(answer)):
        clock.advance(180)
        client.post(f'/api/captcha/{widget_id}/input', json={'value': answer[:i + 1]})
    clock.advance(600)
    return client.post(f'/api/captcha/{widget_id}/verify').get_json()


def test_mount_returns_image_but_not_text(client, registry):
    data = mount(client)
    text = registry.get(data['widget_id']).session.challenge_text

    assert data['challenge_image'].startswith('data:image/png;base64,')
    assert data['attempts_remaining'] == 3
    assert data['verified'] is False
    assert data['locked'] is False
    assert text not in str({k: v for k, v in data.items() if k != 'challenge_image'})


def test_human_flow_verifies(client, clock, registry):
    data = mount(client)
    widget_id = data['widget_id']
    answer = registry.get(widget_id).session.challenge_text

    result = solve_like_human(client, clock, widget_id, answer)
    assert result['verified'] is True
    assert result['reason'] == 'verified'
    assert 'challenge_image' not in result

    status = client.get(f'/api/captcha/{widget_id}').get_json()
    assert status['verified'] is True


def test_instant_submit_is_flagged(client, registry):
    widget_id = mount(client)['widget_id']
    answer = registry.get(widget_id).session.challenge_text
    client.post(f'/api/captcha/{widget_id}/input', json={'value': answer})

    result = client.post(f'/api/captcha/{widget_id}/verify').get_json()
    assert result['verified'] is False
    assert result['reason'] == 'bot_suspected'
    assert result['attempts_remaining'] == 2
    assert result['challenge_image'].startswith('data:image/png')


def test_lockout_over_http(client, clock):
    widget_id = mount(client)['widget_id']
    for _ in range(3):
        result = client.post(f'/api/captcha/{widget_id}/verify').get_json()
    assert result['locked'] is True
    assert result['attempts_remaining'] == 0
    assert result['lockout_remaining_ms'] == 30_000
    assert 'message' in result

    clock.advance(10_000)
    result = client.post(f'/api/captcha/{widget_id}/verify').get_json()
    assert result['reason'] == 'locked'
    assert result['lockout_remaining_ms'] == 20_000

    clock.advance(20_000)
    status = client.get(f'/api/captcha/{widget_id}').get_json()
    assert status['locked'] is False
    assert status['attempts_remaining'] == 3


def test_refresh_returns_new_image_and_unverifies(client, clock, registry):
    widget_id = mount(client)['widget_id']
    answer = registry.get(widget_id).session.challenge_text
    solve_like_human(client, clock, widget_id, answer)

    data = client.post(f'/api/captcha/{widget_id}/refresh').get_json()
    assert data['verified'] is False
    assert registry.is_verified(widget_id) is False


def test_paste_and_drop_rejected(client, registry):
    widget_id = mount(client)['widget_id']
    for kind in ('paste', 'drop'):
        data = client.post(f'/api/captcha/{widget_id}/{kind}').get_json()
        assert data['accepted'] is False
    assert registry.get(widget_id).session.user_input == ''


@pytest.mark.parametrize('payload', [{'count': 0}, {'count': 501}, {'count': 'ten'}, {'count': True}])
def test_pointer_batch_validation(client, payload):
    widget_id = mount(client)['widget_id']
    response = client.post(f'/api/captcha/{widget_id}/pointer', json=payload)
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Invalid payload'


def test_input_validation(client):
    widget_id = mount(client)['widget_id']
    assert client.post(f'/api/captcha/{widget_id}/input', json={'value': 5}).status_code == 400
    assert client.post(f'/api/captcha/{widget_id}/input', json={'value': 'x' * 65}).status_code == 400
    assert client.post(f'/api/captcha/{widget_id}/input', json=['x']).status_code == 400


def test_unknown_widget_is_404(client):
    response = client.post('/api/captcha/doesnotexist/verify')
    assert response.status_code == 404
    assert response.get_json()['error'] == 'Unknown widget'


def test_unmount(client, registry):
    widget_id = mount(client)['widget_id']
    assert client.delete(f'/api/captcha/{widget_id}').status_code == 200
    assert client.delete(f'/api/captcha/{widget_id}').status_code == 404


def test_method_not_allowed_is_json(client):
    response = client.get('/api/captcha')
    assert response.status_code == 405
    assert response.get_json()['error'] == 'Method not allowed'


def registration(widget_id, **overrides):
    data = {
        'name': 'Sam',
        'email': 'sam@example.com',
        'password': 'hunter22',
        'confirm_password': 'hunter22',
        'widget_id': widget_id,
    }
    data.update(overrides)
    return data


def test_register_requires_verified_captcha(client):
    widget_id = mount(client)['widget_id']
    response = client.post('/api/register', json=registration(widget_id))
    assert response.status_code == 403
    assert response.get_json()['error'] == 'CAPTCHA verification required'


def test_register_checks_passwords_first(client):
    widget_id = mount(client)['widget_id']
    response = client.post('/api/register', json=registration(widget_id, confirm_password='other'))
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Passwords do not match'


def test_register_missing_fields(client):
    response = client.post('/api/register', json={'name': 'Sam'})
    assert response.status_code == 400
    assert 'email' in response.get_json()['message']


def test_register_consumes_verified_widget(client, clock, registry):
    widget_id = mount(client)['widget_id']
    answer = registry.get(widget_id).session.challenge_text
    assert solve_like_human(client, clock, widget_id, answer)['verified'] is True

    response = client.post('/api/register', json=registration(widget_id))
    assert response.status_code == 201
    assert response.get_json()['email'] == 'sam@example.com'

    # A widget can only gate one registration
    response = client.post('/api/register', json=registration(widget_id))
    assert response.status_code == 403


def test_register_accepts_one_of_two_concurrent_requests(app, client, clock, registry):
    widget_id = mount(client)['widget_id']
    answer = registry.get(widget_id).session.challenge_text
    assert solve_like_human(client, clock, widget_id, answer)['verified'] is True

    barrier = threading.Barrier(2)
    statuses = []

    def submit():
        own_client = app.test_client()
        barrier.wait()
        statuses.append(own_client.post('/api/register', json=registration(widget_id)).status_code)

    threads = [threading.Thread(target=submit) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(statuses) == [201, 403]


def test_register_rejected_after_rotation(client, clock, registry):
    widget_id = mount(client)['widget_id']
    answer = registry.get(widget_id).session.challenge_text
    assert solve_like_human(client, clock, widget_id, answer)['verified'] is True

    # The challenge rotates before the form is submitted
    clock.advance(120_000)
    response = client.post('/api/register', json=registration(widget_id))
    assert response.status_code == 403
    assert registry.get(widget_id).mounted


def test_registration_log_omits_email(client, clock, registry, event_logger, monkeypatch):
    monkeypatch.setattr('text_captcha_server.captcha_logger', event_logger)
    widget_id = mount(client)['widget_id']
    answer = registry.get(widget_id).session.challenge_text
    assert solve_like_human(client, clock, widget_id, answer)['verified'] is True

    assert client.post('/api/register', json=registration(widget_id)).status_code == 201
    event_type, data = event_logger.events[-1]
    assert event_type == 'registration_accepted'
    assert data == {'widget_id': widget_id}


def test_analytics_endpoint(client, registry):
    widget_id = mount(client)['widget_id']
    client.post(f'/api/captcha/{widget_id}/verify')
    stats = client.get('/api/analytics').get_json()
    assert stats['widgets_mounted'] == 1
    assert stats['bot_detected'] == 1
    assert stats['bot_detection_rate'] == 100.0


def test_admin_endpoints(client):
    mount(client)
    health = client.get('/admin/health').get_json()
    assert health['registry']['active_widgets'] == 1
    assert health['overall_status'] in ('healthy', 'degraded', 'unhealthy')

    metrics = client.get('/admin/metrics').get_json()
    assert metrics['captcha_generation']['count'] >= 1

    assert client.get('/admin/logs?type=passwd').status_code == 400


def test_widget_config_from_env():
    overrides = widget_config_from_env({'CAPTCHA_LOCKOUT_MS': '5000', 'CAPTCHA_MAX_FAILURES': '5',
                                        'UNRELATED': 'x'})
    assert overrides == {'lockout_ms': 5000, 'max_failures': 5}

    with pytest.raises(ValueError):
        widget_config_from_env({'CAPTCHA_LOCKOUT_MS': 'soon'})


def test_default_config_reads_environment():
    config = default_config({'CAPTCHA_PORT': '9090', 'CAPTCHA_HOST': '0.0.0.0'})
    assert config['PORT'] == 9090
    assert config['HOST'] == '0.0.0.0'
    assert config['CAPTCHA'] == {}
