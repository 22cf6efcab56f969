"""Concrete Provider/Session pairs. Import them through :func:`ezllm.provider.create_provider`."""
