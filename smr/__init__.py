"""Service Merge Reconciler (SMR).

Kubernetes controller core that merges several independently deployed
services into one virtual service and reverses the merge on request:
 - absorbs a service by labelling its deployments' pod templates
 - keeps the merged set in sync with the declared SvcMergerObj resource
 - restores every original service on rollback

Merge state is persisted per resource in sqlite so any process can resume it.
"""
