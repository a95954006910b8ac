from redisc.options import PipeOption, PipeOptions, enable_read_only, enable_transaction


def test_defaults_are_off():
    options = PipeOptions()
    assert options.transaction is False
    assert options.read_only is False


def test_enable_transaction():
    options = enable_transaction().apply(PipeOptions())
    assert options.transaction is True
    assert options.read_only is False


def test_enable_read_only():
    options = enable_read_only().apply(PipeOptions())
    assert options.read_only is True
    assert options.transaction is False


def test_apply_modifies_in_place_and_combines():
    options = PipeOptions()
    for option in (enable_transaction(), enable_read_only()):
        result = option.apply(options)
        assert result is options
    assert options == PipeOptions(transaction=True, read_only=True)


def test_applying_twice_is_idempotent():
    option = enable_transaction()
    options = option.apply(option.apply(PipeOptions()))
    assert options == PipeOptions(transaction=True)


def test_custom_option():
    def reset(opts):
        opts.transaction = False

    options = PipeOption(reset).apply(PipeOptions(transaction=True, read_only=True))
    assert options == PipeOptions(transaction=False, read_only=True)