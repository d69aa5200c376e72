def test_openapi_spec_available(client):
    resp = client.get('/openapi.json')
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['openapi'].startswith('3.')
    assert body['info']['title'] == 'RepairDesk API'
    assert '/iam/auth/login' in body['paths']
    assert 'put' in body['paths']['/repairs/tickets/{ticket_id}/move-next']


def test_docs_page(client):
    resp = client.get('/docs')
    assert resp.status_code == 200
    assert b'redoc' in resp.data


def test_list_parameters_and_caching_headers_documented(client):
    spec = client.get('/openapi.json').get_json()
    for p in ['/repairs/tickets', '/iam/users']:
        get_op = spec['paths'][p]['get']
        refs = [pr.get('$ref', '') for pr in get_op.get('parameters', [])]
        assert any(r.endswith('SortParam') for r in refs), p
        hdrs = get_op['responses']['200'].get('headers', {})
        for h in ['ETag', 'Last-Modified', 'X-Last-Modified-ISO']:
            assert h in hdrs, f"{p} missing header doc {h}"


def test_public_paths_unauthenticated_and_capabilities_hinted(client):
    spec = client.get('/openapi.json').get_json()
    assert spec['paths']['/public/repairs/{token}']['get']['security'] == []
    assert 'security' not in spec['paths']['/repairs/tickets']['get']
    delete_op = spec['paths']['/repairs/tickets/{ticket_id}']['delete']
    assert delete_op['x-required-capabilities'] == ['delete']
    op_ids = [op['operationId'] for ops in spec['paths'].values() for op in ops.values()]
    assert len(op_ids) == len(set(op_ids))


def test_schemas_expose_statuses(client):
    schemas = client.get('/openapi.json').get_json()['components']['schemas']
    assert 'returned' in schemas['RepairTicket']['x-statuses']
    assert schemas['FlowStage']['x-transitions'] == ['waiting', 'in_progress', 'completed']
    assert set(schemas['Error']['properties']['error']['properties']) == {'status', 'title', 'detail', 'code'}
