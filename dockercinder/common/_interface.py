# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Some interface-related tools.
"""

from zope.interface.interface import Method


def interface_decorator(decorator_name, interface, method_decorator,
                        *args, **kwargs):
    """
    Create a class decorator which applies a method decorator to each method of
    an interface.

    Sample Usage::

        class IVolumes(Interface):
            def get(volume_id):
                pass

        def logged_method(method_name, original_name):
            def _run_with_logging(self, *args, **kwargs):
                original = getattr(getattr(self, original_name), method_name)
                with start_action(action_type=method_name):
                    return original(*args, **kwargs)
            return _run_with_logging

        @interface_decorator("logged", IVolumes, logged_method, "_volumes")
        class LoggedVolumes(object):
            def __init__(self, volumes):
                self._volumes = volumes

    :param str decorator_name: A human-meaningful name for the class decorator
        that will be returned by this function.
    :param zope.interface.InterfaceClass interface: The interface from which to
        take methods.
    :param method_decorator: A callable which will decorate a method from the
        interface.  It will be called with the name of the method as the first
        argument and any additional positional and keyword arguments passed to
        ``interface_decorator``.

    :raise TypeError: If ``interface`` declares anything other than methods.

    :return: The class decorator.
    """
    for method_name in interface.names():
        if not isinstance(interface[method_name], Method):
            raise TypeError(
                "{} does not support interfaces with non-methods "
                "attributes".format(decorator_name)
            )

    def class_decorator(cls):
        for name in interface.names():
            setattr(cls, name, method_decorator(name, *args, **kwargs))
        return cls
    return class_decorator
